import itertools

import pytest

from queen.phase_gate.github_client import GitHubApiError


@pytest.fixture(autouse=True)
def _queen_log_path(tmp_path, monkeypatch):
    monkeypatch.setenv("QUEEN_LOG_PATH", str(tmp_path / "queen.log"))
    monkeypatch.delenv("QUEEN_DEBUG", raising=False)


class FakeGitHubClient:
    """In-memory stand-in for GitHubClient covering one repository."""

    def __init__(self, owner="acme", repo="hive"):
        self.owner = owner
        self.repo = repo
        self.issues = {}
        self.comments = {}
        self.timeline = {}
        self.issue_reactions = {}
        self.comment_reactions = {}
        self.files = {}
        self.installation_repos = []
        self.calls = []
        self.failures = {}
        self.now = "2026-01-10T00:00:00Z"
        self._ids = itertools.count(1000)

    # test helpers

    def add_issue(self, number, labels, timeline=None, locked=False, pull_request=False):
        issue = {
            "number": number,
            "state": "open",
            "locked": locked,
            "labels": [{"name": name} for name in labels],
        }
        if pull_request:
            issue["pull_request"] = {"url": "x"}
        self.issues[number] = issue
        self.comments.setdefault(number, [])
        self.timeline[number] = list(timeline or [])
        return issue

    def add_comment(self, number, body, login="queen-bot", created_at=None):
        comment = {
            "id": next(self._ids),
            "body": body,
            "user": {"login": login},
            "created_at": created_at or self.now,
        }
        self.comments.setdefault(number, []).append(comment)
        return comment

    def label_names(self, number):
        return [lbl["name"] for lbl in self.issues[number]["labels"]]

    def fail(self, method, *errors):
        self.failures.setdefault(method, []).extend(errors)

    def _label_event(self, number, name, event):
        if number in self.timeline:
            self.timeline[number].append({"event": event, "label": {"name": name}, "created_at": self.now})

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def mutation_calls(self):
        mutating = {"add_labels", "remove_label", "create_comment", "update_issue", "lock_issue", "unlock_issue"}
        return [call for call in self.calls if call[0] in mutating]

    # client surface

    def list_issues(self, owner, repo, label, state="open"):
        self._record("list_issues", label)
        return [
            issue
            for issue in self.issues.values()
            if issue["state"] == state and label in [lbl["name"] for lbl in issue["labels"]]
        ]

    def get_issue(self, owner, repo, number):
        self._record("get_issue", number)
        if number not in self.issues:
            raise GitHubApiError("Not Found", status=404)
        return self.issues[number]

    def list_issue_comments(self, owner, repo, number):
        self._record("list_issue_comments", number)
        return list(self.comments.get(number, []))

    def list_timeline(self, owner, repo, number):
        self._record("list_timeline", number)
        if number not in self.timeline:
            raise GitHubApiError("Not Found", status=404)
        return list(self.timeline[number])

    def list_issue_reactions(self, owner, repo, number):
        self._record("list_issue_reactions", number)
        return list(self.issue_reactions.get(number, []))

    def list_comment_reactions(self, owner, repo, comment_id):
        self._record("list_comment_reactions", comment_id)
        return list(self.comment_reactions.get(comment_id, []))

    def add_labels(self, owner, repo, number, labels):
        self._record("add_labels", number, tuple(labels))
        current = self.label_names(number)
        for name in labels:
            if name not in current:
                self.issues[number]["labels"].append({"name": name})
                self._label_event(number, name, "labeled")

    def remove_label(self, owner, repo, number, label):
        self._record("remove_label", number, label)
        if label not in self.label_names(number):
            raise GitHubApiError("Label does not exist", status=404)
        self.issues[number]["labels"] = [lbl for lbl in self.issues[number]["labels"] if lbl["name"] != label]
        self._label_event(number, label, "unlabeled")

    def create_comment(self, owner, repo, number, body):
        self._record("create_comment", number, body)
        return self.add_comment(number, body)

    def update_issue(self, owner, repo, number, **fields):
        self._record("update_issue", number, fields)
        self.issues[number].update(fields)

    def lock_issue(self, owner, repo, number, reason="resolved"):
        self._record("lock_issue", number, reason)
        self.issues[number]["locked"] = True

    def unlock_issue(self, owner, repo, number):
        self._record("unlock_issue", number)
        if not self.issues[number]["locked"]:
            raise GitHubApiError("Issue is not locked", status=422)
        self.issues[number]["locked"] = False

    def get_repository_file(self, owner, repo, path):
        self._record("get_repository_file", path)
        if path not in self.files:
            raise GitHubApiError("Not Found", status=404)
        return self.files[path]

    def list_installation_repositories(self):
        self._record("list_installation_repositories")
        return list(self.installation_repos)


@pytest.fixture
def fake_client():
    return FakeGitHubClient()


@pytest.fixture
def labeled_event():
    def _event(name, created_at, event="labeled"):
        return {"event": event, "label": {"name": name}, "created_at": created_at}

    return _event


@pytest.fixture
def reaction():
    def _reaction(login, content):
        return {"content": content, "user": {"login": login} if login else None}

    return _reaction

"""Per-repository governance config: YAML document -> EffectiveConfig.

Resolution never raises. Missing, malformed or out-of-range values degrade
to defaults or are clamped, and each adjustment is logged.
"""

from __future__ import annotations

import base64
import math
import re
from dataclasses import dataclass, field
from typing import Any, List, Literal, Mapping, Optional, Tuple, Union

import yaml

from queen.phase_gate.logger import log_event

CONFIG_PATH = ".github/hivemoot.yml"
MS_PER_MINUTE = 60 * 1000

AFTER_MINUTES_BOUNDS = (1, 30 * 24 * 60)
MIN_VOTERS_BOUNDS = (0, 50)
MIN_READY_BOUNDS = (0, 50)
STALE_DAYS_BOUNDS = (1, 30)
MAX_PRS_PER_ISSUE_BOUNDS = (1, 10)

DEFAULT_MIN_VOTERS = 3
DEFAULT_MIN_READY = 0
DEFAULT_STALE_DAYS = 3
DEFAULT_MAX_PRS_PER_ISSUE = 3

MAX_LIST_ENTRIES = 20
MAX_USERNAME_LENGTH = 39
_USERNAME_RE = re.compile(r"^[a-z0-9](?:[a-z0-9]|-(?=[a-z0-9])){0,38}$")

_COMPONENT = "config_loader"


@dataclass(frozen=True)
class RequiredParticipants:
    min_count: int = 0
    users: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ManualExit:
    type: Literal["manual"] = "manual"


@dataclass(frozen=True)
class AutoVotingExit:
    after_ms: int
    requires: Literal["majority", "unanimous"] = "majority"
    min_voters: int = DEFAULT_MIN_VOTERS
    required_voters: RequiredParticipants = field(default_factory=RequiredParticipants)
    type: Literal["auto"] = "auto"


@dataclass(frozen=True)
class AutoDiscussionExit:
    after_ms: int
    min_ready: int = DEFAULT_MIN_READY
    required_ready: RequiredParticipants = field(default_factory=RequiredParticipants)
    type: Literal["auto"] = "auto"


VotingExit = Union[ManualExit, AutoVotingExit]
DiscussionExit = Union[ManualExit, AutoDiscussionExit]


@dataclass(frozen=True)
class IntakeMethod:
    method: Literal["update", "approval"]
    min_approvals: int = 0


@dataclass(frozen=True)
class MergeReadyConfig:
    min_approvals: int = 1


@dataclass(frozen=True)
class PRConfig:
    stale_days: int = DEFAULT_STALE_DAYS
    max_prs_per_issue: int = DEFAULT_MAX_PRS_PER_ISSUE
    trusted_reviewers: Tuple[str, ...] = ()
    intake: Tuple[IntakeMethod, ...] = (IntakeMethod("update"),)
    merge_ready: Optional[MergeReadyConfig] = None


@dataclass(frozen=True)
class StandupConfig:
    enabled: bool = False
    category: Optional[str] = None


@dataclass(frozen=True)
class EffectiveConfig:
    version: int = 1
    discussion: Tuple[DiscussionExit, ...] = (ManualExit(),)
    voting: Tuple[VotingExit, ...] = (ManualExit(),)
    extended_voting: Tuple[VotingExit, ...] = (ManualExit(),)
    pr: Optional[PRConfig] = None
    standup: StandupConfig = field(default_factory=StandupConfig)


def default_config() -> EffectiveConfig:
    return EffectiveConfig()


def auto_exits(exits) -> List[Any]:
    return [exit_ for exit_ in exits if getattr(exit_, "type", None) == "auto"]


def has_auto_exits(config: EffectiveConfig) -> bool:
    return any(
        auto_exits(exits)
        for exits in (config.discussion, config.voting, config.extended_voting)
    )


def _warn(repo, message):
    log_event(_COMPONENT, f"repo={repo} {message}", level="warning")


def _is_number(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


def _round_half_up(value) -> int:
    return int(math.floor(value + 0.5))


def _clamp_number(value, bounds, default, field_name, repo) -> int:
    if value is None:
        return default
    if not _is_number(value):
        _warn(repo, f"invalid {field_name}={value!r} expected number, using default={default}")
        return default
    low, high = bounds
    rounded = _round_half_up(value)
    clamped = max(low, min(high, rounded))
    if clamped != rounded or rounded != value:
        log_event(
            _COMPONENT,
            f"repo={repo} clamped {field_name} from={value} to={clamped} bounds=[{low},{high}]",
        )
    return clamped


def parse_username_list(value, repo, field_name) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        _warn(repo, f"invalid {field_name} expected list, using empty")
        return ()

    result: List[str] = []
    for entry in value:
        if len(result) >= MAX_LIST_ENTRIES:
            log_event(_COMPONENT, f"repo={repo} {field_name} truncated to {MAX_LIST_ENTRIES} entries")
            break
        if not isinstance(entry, str) or not entry:
            _warn(repo, f"invalid {field_name} entry={entry!r} expected non-empty string, skipping")
            continue
        cleaned = entry.strip()
        if cleaned.startswith("@"):
            cleaned = cleaned[1:]
        if not cleaned:
            _warn(repo, f"empty {field_name} entry after trimming={entry!r}, skipping")
            continue
        if len(cleaned) > MAX_USERNAME_LENGTH:
            _warn(repo, f"invalid {field_name} entry={cleaned!r} exceeds {MAX_USERNAME_LENGTH} chars, skipping")
            continue
        normalized = cleaned.lower()
        if not _USERNAME_RE.match(normalized):
            _warn(repo, f"invalid {field_name} entry={cleaned!r} not a valid username, skipping")
            continue
        if normalized in result:
            continue
        result.append(normalized)
    return tuple(result)


def parse_required_participants(value, repo, field_name, list_key) -> RequiredParticipants:
    if value is None:
        return RequiredParticipants()

    if isinstance(value, list):
        users = parse_username_list(value, repo, field_name)
        return RequiredParticipants(min_count=len(users), users=users)

    if not isinstance(value, dict):
        _warn(repo, f"invalid {field_name} expected list or mapping, using empty")
        return RequiredParticipants()

    users = parse_username_list(value.get(list_key), repo, f"{field_name}.{list_key}")
    if "minCount" in value:
        min_count = _clamp_number(
            value.get("minCount"), (0, len(users)), len(users), f"{field_name}.minCount", repo
        )
    elif value.get("mode") == "any":
        min_count = min(1, len(users))
    else:
        if "mode" in value and value.get("mode") != "all":
            _warn(repo, f"invalid {field_name}.mode={value.get('mode')!r}, treating as all")
        min_count = len(users)
    return RequiredParticipants(min_count=min_count, users=users)


def _after_ms(entry, repo, field_name) -> int:
    minutes = _clamp_number(
        entry.get("afterMinutes"), AFTER_MINUTES_BOUNDS, AFTER_MINUTES_BOUNDS[0], field_name, repo
    )
    return minutes * MS_PER_MINUTE


def _voting_exit(entry, repo, phase_name) -> AutoVotingExit:
    requires = entry.get("requires", "majority")
    if requires not in ("majority", "unanimous"):
        _warn(repo, f"invalid {phase_name}.requires={requires!r}, using majority")
        requires = "majority"
    return AutoVotingExit(
        after_ms=_after_ms(entry, repo, f"{phase_name}.afterMinutes"),
        requires=requires,
        min_voters=_clamp_number(
            entry.get("minVoters"), MIN_VOTERS_BOUNDS, DEFAULT_MIN_VOTERS, f"{phase_name}.minVoters", repo
        ),
        required_voters=parse_required_participants(
            entry.get("requiredVoters"), repo, f"{phase_name}.requiredVoters", "voters"
        ),
    )


def _discussion_exit(entry, repo, phase_name) -> AutoDiscussionExit:
    return AutoDiscussionExit(
        after_ms=_after_ms(entry, repo, f"{phase_name}.afterMinutes"),
        min_ready=_clamp_number(
            entry.get("minReady"), MIN_READY_BOUNDS, DEFAULT_MIN_READY, f"{phase_name}.minReady", repo
        ),
        required_ready=parse_required_participants(
            entry.get("requiredReady"), repo, f"{phase_name}.requiredReady", "users"
        ),
    )


def parse_exits(raw, repo, phase_name, build_auto) -> tuple:
    """Resolve one phase's exit list.

    The result is homogeneous: a single ManualExit, or auto exits sorted
    by ascending after_ms.
    """
    if raw is None:
        return (ManualExit(),)
    if not isinstance(raw, list):
        _warn(repo, f"invalid {phase_name}.exits expected list, using manual")
        return (ManualExit(),)

    manual_seen = False
    autos = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            _warn(repo, f"invalid {phase_name}.exits[{index}] expected mapping, dropping")
            continue
        exit_type = entry.get("type")
        if exit_type == "manual":
            manual_seen = True
        elif exit_type == "auto":
            if not _is_number(entry.get("afterMinutes")):
                _warn(repo, f"invalid {phase_name}.exits[{index}].afterMinutes expected number, dropping")
                continue
            autos.append(build_auto(entry, repo, f"{phase_name}.exits[{index}]"))
        else:
            _warn(repo, f"invalid {phase_name}.exits[{index}].type={exit_type!r}, dropping")

    if manual_seen and autos:
        _warn(repo, f"{phase_name}.exits mixes manual and auto entries, using manual")
        return (ManualExit(),)
    if not autos:
        if raw and not manual_seen:
            _warn(repo, f"{phase_name}.exits has no valid entries, using manual")
        return (ManualExit(),)
    return tuple(sorted(autos, key=lambda exit_: exit_.after_ms))


def _phase_block(proposals, key, repo):
    block = proposals.get(key)
    if block is None:
        return None
    if not isinstance(block, dict):
        _warn(repo, f"invalid governance.proposals.{key} expected mapping, using manual")
        return {}
    return block


def _parse_intake(raw, trusted_reviewers, repo) -> Tuple[IntakeMethod, ...]:
    default = (IntakeMethod("update"),)
    if raw is None:
        return default
    if not isinstance(raw, list):
        _warn(repo, "invalid governance.pr.intake expected list, using update")
        return default

    methods: List[IntakeMethod] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            _warn(repo, f"invalid governance.pr.intake[{index}] expected mapping, skipping")
            continue
        method = entry.get("method")
        if method == "update":
            methods.append(IntakeMethod("update"))
        elif method == "approval":
            if not trusted_reviewers:
                _warn(repo, "intake method approval requires trustedReviewers, skipping")
                continue
            min_approvals = _clamp_number(
                entry.get("minApprovals"),
                (1, len(trusted_reviewers)),
                1,
                f"governance.pr.intake[{index}].minApprovals",
                repo,
            )
            methods.append(IntakeMethod("approval", min_approvals))
        else:
            _warn(repo, f"invalid governance.pr.intake[{index}].method={method!r}, skipping")

    if not methods:
        return default
    return tuple(methods)


def _parse_merge_ready(raw, trusted_reviewers, repo) -> Optional[MergeReadyConfig]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        _warn(repo, "invalid governance.pr.mergeReady expected mapping, disabling")
        return None
    if not trusted_reviewers:
        _warn(repo, "mergeReady requires trustedReviewers, disabling")
        return None
    return MergeReadyConfig(
        min_approvals=_clamp_number(
            raw.get("minApprovals"),
            (1, len(trusted_reviewers)),
            1,
            "governance.pr.mergeReady.minApprovals",
            repo,
        )
    )


def _parse_pr(raw, repo) -> Optional[PRConfig]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        _warn(repo, "invalid governance.pr expected mapping, PR workflow disabled")
        return None
    trusted = parse_username_list(raw.get("trustedReviewers"), repo, "trustedReviewers")
    return PRConfig(
        stale_days=_clamp_number(
            raw.get("staleDays"), STALE_DAYS_BOUNDS, DEFAULT_STALE_DAYS, "governance.pr.staleDays", repo
        ),
        max_prs_per_issue=_clamp_number(
            raw.get("maxPRsPerIssue"),
            MAX_PRS_PER_ISSUE_BOUNDS,
            DEFAULT_MAX_PRS_PER_ISSUE,
            "governance.pr.maxPRsPerIssue",
            repo,
        ),
        trusted_reviewers=trusted,
        intake=_parse_intake(raw.get("intake"), trusted, repo),
        merge_ready=_parse_merge_ready(raw.get("mergeReady"), trusted, repo),
    )


def _parse_standup(raw, repo) -> StandupConfig:
    if raw is None:
        return StandupConfig()
    if not isinstance(raw, dict):
        _warn(repo, "invalid standup expected mapping, disabling")
        return StandupConfig()
    if raw.get("enabled") is not True:
        return StandupConfig()
    category = raw.get("category")
    if not isinstance(category, str) or not category.strip():
        _warn(repo, "standup.enabled requires a non-empty category, disabling")
        return StandupConfig()
    return StandupConfig(enabled=True, category=category.strip())


def resolve_config(document: Optional[Mapping[str, Any]], repo: str = "") -> EffectiveConfig:
    if document is None:
        log_event(_COMPONENT, f"repo={repo} no config document, using defaults")
        return default_config()
    if not isinstance(document, dict):
        _warn(repo, f"config document is {type(document).__name__} not a mapping, using defaults")
        return default_config()

    version = document.get("version", 1)
    if not _is_number(version):
        _warn(repo, f"invalid version={version!r}, using 1")
        version = 1

    governance = document.get("governance") or {}
    if not isinstance(governance, dict):
        _warn(repo, "invalid governance expected mapping, using defaults")
        governance = {}
    proposals = governance.get("proposals") or {}
    if not isinstance(proposals, dict):
        _warn(repo, "invalid governance.proposals expected mapping, using manual exits")
        proposals = {}

    discussion_block = _phase_block(proposals, "discussion", repo) or {}
    voting_block = _phase_block(proposals, "voting", repo) or {}
    extended_block = _phase_block(proposals, "extendedVoting", repo)

    discussion = parse_exits(discussion_block.get("exits"), repo, "discussion", _discussion_exit)
    voting = parse_exits(voting_block.get("exits"), repo, "voting", _voting_exit)
    if extended_block is None:
        extended_voting = voting
    else:
        extended_voting = parse_exits(
            extended_block.get("exits"), repo, "extendedVoting", _voting_exit
        )

    config = EffectiveConfig(
        version=int(version),
        discussion=discussion,
        voting=voting,
        extended_voting=extended_voting,
        pr=_parse_pr(governance.get("pr"), repo),
        standup=_parse_standup(document.get("standup"), repo),
    )
    log_event(
        _COMPONENT,
        (
            f"repo={repo} resolved discussion={_describe(discussion)} "
            f"voting={_describe(voting)} extended_voting={_describe(extended_voting)} "
            f"pr={'on' if config.pr else 'off'} standup={'on' if config.standup.enabled else 'off'}"
        ),
    )
    return config


def _describe(exits) -> str:
    autos = auto_exits(exits)
    if not autos:
        return "manual"
    return "auto:" + ",".join(str(exit_.after_ms // MS_PER_MINUTE) + "m" for exit_ in autos)


def parse_config_text(text: str, repo: str = "") -> EffectiveConfig:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        _warn(repo, f"parse_failed path={CONFIG_PATH} error={exc}")
        return default_config()
    return resolve_config(document, repo)


def load_repository_config(client, owner: str, repo: str) -> EffectiveConfig:
    full_name = f"{owner}/{repo}"
    try:
        content = client.get_repository_file(owner, repo, CONFIG_PATH)
    except Exception as exc:
        if getattr(exc, "status", None) == 404:
            log_event(_COMPONENT, f"repo={full_name} no {CONFIG_PATH}, using defaults")
        else:
            _warn(full_name, f"load_failed path={CONFIG_PATH} error={exc}, using defaults")
        return default_config()

    if not isinstance(content, dict) or content.get("type") != "file":
        _warn(full_name, f"{CONFIG_PATH} is not a file, using defaults")
        return default_config()
    try:
        raw = content.get("content") or ""
        if content.get("encoding") == "base64":
            raw = base64.b64decode(raw).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as exc:
        _warn(full_name, f"decode_failed path={CONFIG_PATH} error={exc}, using defaults")
        return default_config()
    return parse_config_text(raw, full_name)

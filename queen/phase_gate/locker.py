class ProcessedIssues:
    """Issue numbers already handled in one phase pass.

    Listing by canonical and legacy label names can return the same issue
    more than once.
    """

    def __init__(self):
        self._seen = set()

    def seen(self, phase, issue_number):
        return (phase, issue_number) in self._seen

    def mark(self, phase, issue_number):
        self._seen.add((phase, issue_number))

    def __len__(self):
        return len(self._seen)

from __future__ import annotations


class Job:
    """
    Base class for ledger work items.

    Subclasses are registered with `@register_job("tag")`, take a flat list of
    JSON-serializable constructor arguments and implement `handle()`. Calling
    `defer(seconds)` inside `handle()` hands the entry back to the ledger for a
    delayed re-lease instead of completing it.
    """

    tag = ""

    job_entry = None
    deferred_for: float | None = None

    def set_job_entry(self, entry) -> None:
        self.job_entry = entry

    def defer(self, seconds: float) -> None:
        self.deferred_for = float(seconds)

    @property
    def deferrals(self) -> int:
        """How many times the current entry has been leased before this run."""
        if self.job_entry is None:
            return 0
        return max(0, int(self.job_entry.attempts or 0) - 1)

    def handle(self) -> None:
        raise NotImplementedError

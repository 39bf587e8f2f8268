class PercentOfTotal:
    """Fraction of a fixed number of discrete steps, never above 1.0."""

    def __init__(self, total: int) -> None:
        self._total = float(total)
        self._done = 0.0

    @property
    def percent(self) -> float:
        if self._total <= 0:
            return 1.0
        return self._done / self._total

    def increment_done(self) -> "PercentOfTotal":
        self._done = min(self._done + 1.0, self._total)
        return self

    def done_all(self) -> "PercentOfTotal":
        self._done = self._total
        return self

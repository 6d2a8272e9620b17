class ExponentialBackoff:
    """Reconnect delays: base, doubling per failure, capped; reset after a success."""

    def __init__(self, base_delay: float, max_delay: float, factor: float = 2.0):
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("need 0 < base_delay <= max_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.factor = factor
        self._delay = base_delay

    @property
    def current(self) -> float:
        return self._delay

    def next_delay(self) -> float:
        delay = self._delay
        self._delay = min(self._delay * self.factor, self.max_delay)
        return delay

    def reset(self) -> None:
        self._delay = self.base_delay

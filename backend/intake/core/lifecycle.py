from __future__ import annotations


class ShutdownFlag:
    """Cooperative shutdown flag shared by dispatch and transport."""

    def __init__(self) -> None:
        self._requested = False

    @property
    def requested(self) -> bool:
        return self._requested

    def request(self) -> bool:
        """Flip the flag. Returns False when shutdown was already requested."""

        if self._requested:
            return False
        self._requested = True
        return True

"""Game mode policies.

A mode decides how many rounds a chain has, how long a player may hold a
round slot, and how many players a single round admits at once. The engine
only ever consults these through ``get_mode(name)``.
"""

from __future__ import annotations

from datetime import timedelta

from gartic.sessions.errors import RoundOutOfRange, UnknownMode


class GameMode:
    """Base policy. Subclasses override the per-round rules."""

    name: str = ""
    last_round: int = 0

    def time_limit(self, round_no: int) -> timedelta:
        raise NotImplementedError

    def capacity(self, round_no: int) -> int:
        return 1

    def prompt(self, round_no: int) -> str:
        return ""

    def is_last(self, round_no: int) -> bool:
        return round_no >= self.last_round

    def check_round(self, round_no: int) -> None:
        """Raise RoundOutOfRange if the mode has no such round."""
        if round_no < 0 or round_no > self.last_round:
            raise RoundOutOfRange(self.name, round_no, self.last_round)


class Ross(GameMode):
    """Four attribute rounds, then a final character drawing."""

    name = "ross"
    last_round = 4

    def time_limit(self, round_no: int) -> timedelta:
        if round_no < self.last_round:
            return timedelta(seconds=900)
        return timedelta(seconds=5200)

    def capacity(self, round_no: int) -> int:
        return 2

    def prompt(self, round_no: int) -> str:
        if round_no < self.last_round:
            return "Draw an attribute."
        return "Draw a character using the attributes."


class Evolution(GameMode):
    """Three-stage evolution line, one player per stage."""

    name = "evolution"
    last_round = 2

    def time_limit(self, round_no: int) -> timedelta:
        if round_no == 0:
            return timedelta(seconds=1800)
        if round_no == 1:
            return timedelta(seconds=2700)
        return timedelta(seconds=3600)

    def prompt(self, round_no: int) -> str:
        if round_no == 0:
            return "Draw the first, base evolution."
        if round_no == 1:
            return "Draw the second evolution."
        return "Draw the third, final evolution."


MODES: dict[str, GameMode] = {
    Ross.name: Ross(),
    Evolution.name: Evolution(),
}


def get_mode(name: str) -> GameMode:
    """Look up a registered mode. Raises UnknownMode."""
    mode = MODES.get(name)
    if mode is None:
        raise UnknownMode(name)
    return mode

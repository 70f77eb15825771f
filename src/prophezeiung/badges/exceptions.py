"""Badge engine error taxonomy."""

from __future__ import annotations


class BadgeError(Exception):
    """Base class for badge engine failures."""


class CatalogLoadError(BadgeError):
    """The badge catalog is malformed. Fatal at startup."""


class AggregationError(BadgeError):
    """A user's activity could not be read. The pass is aborted and may be retried."""

    def __init__(self, user_id: str, reason: str) -> None:
        super().__init__(f"Failed to aggregate activity for {user_id}: {reason}")
        self.user_id = user_id


class AwardPersistenceError(BadgeError):
    """An award could not be written for a reason other than a uniqueness conflict."""

    def __init__(self, user_id: str, reason: str) -> None:
        super().__init__(f"Failed to persist awards for {user_id}: {reason}")
        self.user_id = user_id


class BadgeNotFoundError(BadgeError):
    """A badge key is not part of the catalog."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Badge not found: {key}")
        self.key = key


class RoundNotFoundError(BadgeError):
    """A round id does not exist."""

    def __init__(self, round_id: str) -> None:
        super().__init__(f"Round not found: {round_id}")
        self.round_id = round_id


class RoundNotPublishedError(BadgeError):
    """Round result badges were requested before the results were published."""

    def __init__(self, round_id: str) -> None:
        super().__init__(f"Results of round {round_id} are not published yet")
        self.round_id = round_id

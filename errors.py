from __future__ import annotations


class MeritPortalError(Exception):
    """Base class for errors surfaced to the user as a form message."""


class ValidationError(MeritPortalError):
    pass


class CapacityExceededError(MeritPortalError):
    def __init__(self, category: str, existing_points: object, cap: object) -> None:
        self.category = category
        self.existing_points = existing_points
        self.cap = cap
        super().__init__(f"Limit reached! You have {existing_points}/{cap} points in {category}.")


class UploadError(MeritPortalError):
    pass


class PersistenceError(MeritPortalError):
    pass


class CappedWarning(UserWarning):
    """Returned with a created submission whose points were reduced to fit the cap."""

    def __init__(self, category: str, candidate_points: object, awarded_points: object) -> None:
        self.category = category
        self.candidate_points = candidate_points
        self.awarded_points = awarded_points
        super().__init__(
            f"{category} is close to its cap: awarded {awarded_points} of {candidate_points} points."
        )

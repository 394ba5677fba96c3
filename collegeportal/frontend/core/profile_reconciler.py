"""
Profile Reconciler
==================

Keeps the backend student profile in step with the identity session.

    reconcile(None)     -> profile cleared, incomplete
    reconcile(session)  -> GET /profile/{user_id}
                           404  -> synthesize minimal profile, POST /profile
                           else -> error recorded, profile cleared, incomplete

The backend profile is the only source of truth: nothing application
specific is read from the identity provider's user metadata beyond the
attributes used to seed a new profile.

Completeness gates navigation, so ``is_profile_complete`` is a pure
function of the profile dict.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ...backend.api_client import ApiError, BackendApiClient
from ...identity.models import Session

logger = logging.getLogger("portal.profile")

REQUIRED_PROFILE_FIELDS = ("gpa",)

# Fields shown in the dashboard completeness meter
COMPLETENESS_FIELDS = ("gpa", "satScore", "gradeLevel", "extracurriculars", "career_goals")

PLACEHOLDER_VALUES = ("N/A",)


def _is_filled(value: Any) -> bool:
    if not value:
        return False
    if isinstance(value, str):
        stripped = value.strip()
        return bool(stripped) and stripped not in PLACEHOLDER_VALUES
    return True


def is_profile_complete(profile: Optional[Dict[str, Any]]) -> bool:
    """True iff every required field is present and not a placeholder."""
    if not profile:
        return False
    return all(_is_filled(profile.get(name)) for name in REQUIRED_PROFILE_FIELDS)


def profile_completeness_percent(profile: Optional[Dict[str, Any]]) -> int:
    if not profile:
        return 0
    filled = sum(1 for name in COMPLETENESS_FIELDS if _is_filled(profile.get(name)))
    return round(filled / len(COMPLETENESS_FIELDS) * 100)


def synthesize_profile(session: Session) -> Dict[str, Any]:
    """Minimal profile seeded from session attributes."""
    return {
        "email": session.email,
        "fullName": session.display_name,
        "avatarUrl": session.avatar_url,
        "provider": session.provider,
        "gpa": None,
        "major": None,
        "graduationYear": None,
    }


@dataclass
class ProfileState:
    profile: Optional[Dict[str, Any]] = None
    is_complete: bool = False
    error: Optional[str] = None
    completeness_percent: int = 0

    @classmethod
    def from_profile(cls, profile: Optional[Dict[str, Any]]) -> "ProfileState":
        return cls(
            profile=profile,
            is_complete=is_profile_complete(profile),
            completeness_percent=profile_completeness_percent(profile),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "isComplete": self.is_complete,
            "completenessPercent": self.completeness_percent,
            "error": self.error,
        }


class ProfileReconciler:

    def __init__(self, api: BackendApiClient):
        self.api = api
        self.state = ProfileState()

    async def reconcile(self, session: Optional[Session]) -> ProfileState:
        if session is None:
            self.state = ProfileState()
            return self.state

        try:
            profile = await self.api.get_profile(session.user_id)
            if profile is None:
                seed = synthesize_profile(session)
                logger.info("[PROFILE] not found, creating user=%s", session.user_id)
                created = await self.api.create_profile(session.user_id, seed)
                profile = created or {"userId": session.user_id, **seed}
        except ApiError as e:
            logger.error("[PROFILE] reconcile failed user=%s status=%s error=%s", session.user_id, e.status, e.message)
            self.state = ProfileState(error=e.message)
            return self.state

        self.state = ProfileState.from_profile(profile)
        logger.info(
            "[PROFILE] reconciled user=%s complete=%s percent=%s",
            session.user_id, self.state.is_complete, self.state.completeness_percent,
        )
        return self.state

    def apply_update(self, profile: Optional[Dict[str, Any]]) -> ProfileState:
        """Adopt the profile returned by an explicit update."""
        self.state = ProfileState.from_profile(profile)
        return self.state

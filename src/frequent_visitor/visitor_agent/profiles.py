"""Process-wide profile store: identity resolution across sessions and users."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import threading

from .window import FrequencyWindowPolicy, UserProfile, VisitOutcome

logger = logging.getLogger("frequent_visitor.visitor_agent.profiles")


@dataclass(frozen=True)
class ResolvedVisit:
    profile: UserProfile
    outcome: VisitOutcome
    promoted: bool
    created: bool


class ProfileStore:
    """Maps sessions and authenticated users onto one profile per identity.

    One instance is created at process start and shared by every shard loop.
    ``_lock`` guards the two maps only; the visit itself is recorded after the
    lock is released, under the profile's own lock.
    """

    def __init__(self, policy: FrequencyWindowPolicy | None = None) -> None:
        self.policy = policy or FrequencyWindowPolicy()
        self._unauthenticated: dict[str, UserProfile] = {}
        self._authenticated: dict[str, UserProfile] = {}
        self._lock = threading.Lock()

    def resolve(
        self,
        session_id: str | None,
        user_id: str | None = None,
        *,
        now: datetime | None = None,
    ) -> ResolvedVisit:
        promoted = False
        created = False
        with self._lock:
            if user_id is None:
                if session_id is None:
                    raise ValueError("VISIT_IDENTITY_MISSING")
                profile = self._unauthenticated.get(session_id)
                if profile is None:
                    profile = self._new_profile(session_id, None)
                    self._unauthenticated[session_id] = profile
                    created = True
            else:
                profile = self._authenticated.get(user_id)
                if profile is None:
                    anonymous = self._unauthenticated.pop(session_id, None) if session_id is not None else None
                    if anonymous is not None:
                        profile = anonymous
                        promoted = True
                    else:
                        profile = self._new_profile(session_id, user_id)
                        created = True
                    self._authenticated[user_id] = profile
        if promoted:
            logger.info("Promoted session %s to authenticated user %s", session_id, user_id)
        outcome = profile.record_visit(session_id, user_id, now=now)
        return ResolvedVisit(profile=profile, outcome=outcome, promoted=promoted, created=created)

    def lookup_session(self, session_id: str) -> UserProfile | None:
        with self._lock:
            return self._unauthenticated.get(session_id)

    def lookup_user(self, user_id: str) -> UserProfile | None:
        with self._lock:
            return self._authenticated.get(user_id)

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "unauthenticated": len(self._unauthenticated),
                "authenticated": len(self._authenticated),
            }

    def _new_profile(self, session_id: str | None, user_id: str | None) -> UserProfile:
        profile = UserProfile(policy=self.policy, primary_user_id=user_id)
        if session_id is not None:
            profile.sessions.add(session_id)
        return profile

"""Duplicate detection for inbound intake.

The matcher is a pure function over a candidate ``(email, phone)`` pair and an
iterable of contacts. It never touches the database; callers narrow the contact
set with the normalized-column lookup in :mod:`app.lifecycle.repositories`.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

_NON_DIGITS = re.compile(r"\D+")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().casefold()
    return normalized or None


def normalize_phone(value: str | None) -> str | None:
    if value is None:
        return None
    digits = _NON_DIGITS.sub("", value)
    return digits or None


class MatchableContact(Protocol):
    id: uuid.UUID
    email: str | None
    phone: str | None
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class DuplicateCandidate:
    email: str | None = None
    phone: str | None = None

    @property
    def normalized_email(self) -> str | None:
        return normalize_email(self.email)

    @property
    def normalized_phone(self) -> str | None:
        return normalize_phone(self.phone)

    @property
    def is_empty(self) -> bool:
        return self.normalized_email is None and self.normalized_phone is None


@dataclass(frozen=True, slots=True)
class MatchResult:
    match_type: str | None = None
    matched_contact_id: uuid.UUID | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.match_type is not None


NO_MATCH = MatchResult()


def _recency_key(contact: MatchableContact) -> tuple[datetime, str]:
    updated_at = contact.updated_at or _EPOCH
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return updated_at, str(contact.id)


class DeduplicationMatcher:
    """Compares a candidate against existing contacts on normalized email and phone.

    ``"both"`` is reported only when one contact matches on both fields. Otherwise
    an email match takes precedence over a phone match. When several contacts
    qualify, the most recently updated one wins (id breaks exact ties so the result
    does not depend on iteration order).
    """

    def match(
        self,
        candidate: DuplicateCandidate,
        contacts: Iterable[MatchableContact],
        *,
        exclude_contact_id: uuid.UUID | None = None,
    ) -> MatchResult:
        email = candidate.normalized_email
        phone = candidate.normalized_phone
        if email is None and phone is None:
            return NO_MATCH

        email_matches: list[MatchableContact] = []
        phone_matches: list[MatchableContact] = []
        both_matches: list[MatchableContact] = []
        for contact in contacts:
            if exclude_contact_id is not None and contact.id == exclude_contact_id:
                continue
            on_email = email is not None and normalize_email(contact.email) == email
            on_phone = phone is not None and normalize_phone(contact.phone) == phone
            if on_email and on_phone:
                both_matches.append(contact)
            if on_email:
                email_matches.append(contact)
            if on_phone:
                phone_matches.append(contact)

        for match_type, matches in (("both", both_matches), ("email", email_matches), ("phone", phone_matches)):
            if matches:
                chosen = max(matches, key=_recency_key)
                return MatchResult(match_type=match_type, matched_contact_id=chosen.id)
        return NO_MATCH

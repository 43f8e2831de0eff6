"""Guest matching for inbound bookings."""

import logging
import re
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .database import GuestDB, live, utcnow
from .models import GuestInfo

logger = logging.getLogger(__name__)

EMAIL_SCORE = 50
PHONE_EXACT_SCORE = 40
PHONE_SUFFIX_SCORE = 30
NAME_MAX_SCORE = 20
MAX_SCORE = 100

# Minimum digits on both sides for a suffix match
MIN_SUFFIX_DIGITS = 6

UNKNOWN_GUEST = "Unknown Guest"


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Remove formatting characters but keep a leading + for country codes."""
    if not phone:
        return None
    normalized = re.sub(r'[\s\-\(\)\.]', '', phone)
    return normalized or None


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.strip().lower() or None


def _name_tokens(name: Optional[str]) -> List[str]:
    return [t for t in (name or '').lower().split() if t]


def name_score(name_a: Optional[str], name_b: Optional[str]) -> float:
    """Token overlap scaled to NAME_MAX_SCORE.

    A token matches when it equals or contains a token of the other name.
    """
    tokens_a = _name_tokens(name_a)
    tokens_b = _name_tokens(name_b)
    if not tokens_a or not tokens_b:
        return 0.0

    matching = sum(
        1 for a in tokens_a
        if any(a == b or a in b or b in a for b in tokens_b)
    )
    if matching == 0:
        return 0.0
    return min(NAME_MAX_SCORE, matching / max(len(tokens_a), len(tokens_b)) * NAME_MAX_SCORE)


def phone_score(phone_a: Optional[str], phone_b: Optional[str]) -> int:
    a = normalize_phone(phone_a)
    b = normalize_phone(phone_b)
    if not a or not b:
        return 0
    if a == b:
        return PHONE_EXACT_SCORE
    digits_a = a.lstrip('+')
    digits_b = b.lstrip('+')
    shorter = min(len(digits_a), len(digits_b))
    if shorter >= MIN_SUFFIX_DIGITS and (digits_a.endswith(digits_b) or digits_b.endswith(digits_a)):
        return PHONE_SUFFIX_SCORE
    return 0


def calculate_match_score(
    name: Optional[str],
    email: Optional[str],
    phone: Optional[str],
    candidate: GuestDB
) -> float:
    """Likelihood (0-100) that an incoming guest is an existing profile."""
    score = 0.0

    if normalize_email(email) and normalize_email(email) == normalize_email(candidate.email):
        score += EMAIL_SCORE

    score += phone_score(phone, candidate.phone)
    score += name_score(name, candidate.name)

    return min(MAX_SCORE, score)


def guest_identity(info: GuestInfo) -> Tuple[str, Optional[str], Optional[str]]:
    """Name, email and phone for a guest, synthesizing a name when missing.

    Returns:
        Tuple of (name, email, phone)
    """
    name = info.full_name
    if not name:
        if info.email:
            local_part = info.email.split('@')[0]
            name = re.sub(r'[._\-]+', ' ', local_part).strip().title() or UNKNOWN_GUEST
        elif info.phone:
            name = f"Guest ({info.phone})"
        else:
            name = UNKNOWN_GUEST
    return name, info.email, info.phone


def merge_guest_data(existing: GuestDB, info: GuestInfo) -> bool:
    """Fill gaps in an existing profile from incoming data.

    Returns:
        True if the profile changed
    """
    name, email, phone = guest_identity(info)
    changed = False

    if info.full_name and len(info.full_name) > len(existing.name or ''):
        existing.name = info.full_name
        changed = True
    if email and not existing.email:
        existing.email = email
        changed = True
    if phone and not existing.phone:
        existing.phone = phone
        changed = True
    if info.notes and info.notes not in (existing.notes or ''):
        existing.notes = f"{existing.notes}\n{info.notes}" if existing.notes else info.notes
        changed = True

    if changed:
        existing.updated_at = utcnow()
    return changed


class GuestMatcher:
    """Finds or creates the PMS guest for a channel booking."""

    def __init__(self, min_match_score: int = 70):
        """Initialize guest matcher.

        Args:
            min_match_score: Minimum score for reusing an existing profile
        """
        self.min_match_score = min_match_score
        self.logger = logger.getChild('guest_matcher')

    def _candidates(self, session: Session, email: Optional[str], phone: Optional[str]) -> List[GuestDB]:
        conditions = []
        if normalize_email(email):
            conditions.append(func.lower(GuestDB.email) == normalize_email(email))
        digits = (normalize_phone(phone) or '').lstrip('+')
        if len(digits) >= MIN_SUFFIX_DIGITS:
            conditions.append(GuestDB.phone.like(f"%{digits[-MIN_SUFFIX_DIGITS:]}%"))
        if not conditions:
            return []
        return live(session.query(GuestDB), GuestDB).filter(or_(*conditions)).limit(50).all()

    def find_best_match(self, session: Session, info: GuestInfo) -> Tuple[Optional[GuestDB], float]:
        """Best candidate and its score. An exact email match is decisive."""
        name, email, phone = guest_identity(info)
        best, best_score = None, 0.0
        for candidate in self._candidates(session, email, phone):
            if normalize_email(email) and normalize_email(email) == normalize_email(candidate.email):
                return candidate, float(MAX_SCORE)
            score = calculate_match_score(name, email, phone, candidate)
            if score > best_score:
                best, best_score = candidate, score
        return best, best_score

    def find_or_create_guest(self, session: Session, info: GuestInfo) -> Tuple[GuestDB, bool]:
        """Reuse a confident match or create a new guest.

        Guests without contact data always get a new (placeholder) profile.

        Returns:
            Tuple of (guest, created)
        """
        if info.has_contact:
            match, score = self.find_best_match(session, info)
            if match is not None and score >= self.min_match_score:
                if merge_guest_data(match, info):
                    self.logger.debug(f"Merged booking guest data into {match.id}")
                self.logger.debug(f"Matched guest {match.id} with score {score:.0f}")
                return match, False
            if match is not None:
                self.logger.info(
                    f"Best guest match {match.id} scored {score:.0f} < {self.min_match_score}; creating new guest"
                )

        name, email, phone = guest_identity(info)
        guest = GuestDB(name=name, email=email, phone=phone, notes=info.notes)
        session.add(guest)
        session.flush()
        return guest, True

# app/services/identity_resolver.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

from jose import JWTError, jwt
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import InvalidCredential
from app.models.roster import RosterRecord
from app.schemas.session import Identity

logger = logging.getLogger(__name__)

UNKNOWN_PARTICIPANT = "Unknown Participant"
DEFAULT_ROLE = "participant"

_LOCAL_ENVIRONMENTS = ("local", "test")


@dataclass(frozen=True)
class RosterMatch:
    id: int
    full_name: str
    email: str | None


class RosterLookup(Protocol):
    async def find_by_email_or_id(self, key: str) -> Optional[RosterMatch]:
        ...


class SqlRosterLookup:
    """
    Roster lookup backed by the `roster_records` table.

    Matches case-insensitively on email, or exactly on the external id.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def find_by_email_or_id(self, key: str) -> Optional[RosterMatch]:
        if not key:
            return None
        stmt = (
            select(RosterRecord)
            .where(
                or_(
                    func.lower(RosterRecord.email) == key.lower(),
                    RosterRecord.external_id == key,
                )
            )
            .order_by(RosterRecord.id.asc())
            .limit(1)
        )
        async with self._sessionmaker() as db:
            record = (await db.execute(stmt)).scalar_one_or_none()
        if record is None:
            return None
        return RosterMatch(id=record.id, full_name=record.full_name, email=record.email)


class TokenAuthenticator:
    """
    Decodes participant identity tokens (JWT) into claims.

    Signature verification is on by default. Turning it off is only accepted
    in local/test environments; anywhere else it is a configuration error,
    so unverified identities can never create attendance in production.
    """

    def __init__(
        self,
        secret_key: str | None,
        algorithms: Sequence[str] = ("HS256",),
        *,
        verify_signature: bool = True,
        environment: str = "local",
    ) -> None:
        env = (environment or "local").lower()
        if not verify_signature and env not in _LOCAL_ENVIRONMENTS:
            raise ValueError(
                f"Token signature verification cannot be disabled in APP_ENV={env!r}."
            )
        if not verify_signature:
            logger.warning(
                "Identity token signatures are NOT verified (APP_ENV=%s). "
                "Never run this configuration in production.",
                env,
            )
        self._secret_key = secret_key
        self._algorithms = list(algorithms)
        self._verify_signature = verify_signature

    @staticmethod
    def _strip_scheme(token: str) -> str:
        token = (token or "").strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        return token

    def decode(self, token: str) -> Dict[str, Any]:
        raw = self._strip_scheme(token)
        if not raw:
            raise InvalidCredential("Missing identity token.")

        try:
            if not self._verify_signature:
                return jwt.get_unverified_claims(raw)
            if not self._secret_key:
                raise InvalidCredential("Token verification key is not configured.")
            return jwt.decode(
                raw,
                self._secret_key,
                algorithms=self._algorithms,
                options={"verify_aud": False},
            )
        except JWTError as exc:
            raise InvalidCredential(f"Invalid identity token: {exc}") from exc


def _first(mapping: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = mapping.get(name)
        if value not in (None, ""):
            return value
    return None


def _normalize_email(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip().lower()
    return value or None


class IdentityResolver:
    """
    Turns credentials (identity tokens) and platform participant payloads
    into a normalized `Identity`.

    Identity keys are chosen so that all sources converge on the same key
    for the same person:

        roster:<roster id>   if the roster lookup matched
        email:<address>      else, if an email is known
        user:<id>            else, the token subject / platform user id
    """

    def __init__(
        self,
        authenticator: TokenAuthenticator,
        roster: RosterLookup | None = None,
    ) -> None:
        self._authenticator = authenticator
        self._roster = roster

    async def resolve_token(self, token: str) -> Identity:
        """
        Resolve an identity token. Raises InvalidCredential when the token
        cannot be decoded or carries no subject.
        """
        claims = self._authenticator.decode(token)

        subject = _first(claims, "sub", "userId", "id")
        if subject is None:
            raise InvalidCredential("Identity token has no subject claim.")

        name = _first(claims, "name", "username", "displayName")
        if name is None:
            parts = [
                _first(claims, "firstName", "first_name"),
                _first(claims, "lastName", "last_name"),
            ]
            name = " ".join(str(p) for p in parts if p) or None

        return await self._build(
            subject=str(subject),
            display_name=str(name) if name else None,
            email=_normalize_email(_first(claims, "email", "email_address")),
            role=str(_first(claims, "role") or DEFAULT_ROLE),
        )

    async def resolve_participant(self, payload: Mapping[str, Any]) -> Identity:
        """
        Resolve a participant entry from a webhook or a live-participants
        snapshot. Missing names fall back to a placeholder; only a payload
        with no identifying field at all is rejected.
        """
        if not isinstance(payload, Mapping):
            raise InvalidCredential("Participant payload must be an object.")

        subject = _first(
            payload,
            "participant_user_id",
            "user_id",
            "registrant_id",
            "id",
        )
        email = _normalize_email(_first(payload, "email", "user_email"))
        if subject is None and email is None:
            raise InvalidCredential("Participant payload has no user id or email.")

        name = _first(payload, "user_name", "name", "display_name")

        return await self._build(
            subject=str(subject) if subject is not None else None,
            display_name=str(name) if name else None,
            email=email,
            role=str(_first(payload, "role") or DEFAULT_ROLE).lower(),
        )

    async def _build(
        self,
        *,
        subject: str | None,
        display_name: str | None,
        email: str | None,
        role: str | None,
    ) -> Identity:
        match = await self._lookup_roster(email, subject)

        if match is not None:
            key = f"roster:{match.id}"
            display_name = display_name or match.full_name or None
            email = email or _normalize_email(match.email)
        elif email:
            key = f"email:{email}"
        else:
            key = f"user:{subject}"

        return Identity(
            key=key,
            subject=subject,
            display_name=display_name or UNKNOWN_PARTICIPANT,
            email=email,
            role=role,
            roster_id=match.id if match is not None else None,
        )

    async def _lookup_roster(
        self, email: str | None, subject: str | None
    ) -> Optional[RosterMatch]:
        """
        Best-effort roster match by email, then by external id. Failures are
        logged and treated as "no match".
        """
        if self._roster is None:
            return None
        for candidate in (email, subject):
            if not candidate:
                continue
            try:
                match = await self._roster.find_by_email_or_id(candidate)
            except Exception as exc:  # noqa: BLE001 - roster matching is best-effort
                logger.warning("Roster lookup failed for %s: %s", candidate, exc)
                return None
            if match is not None:
                return match
        return None

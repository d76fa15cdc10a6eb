"""Idempotent resolution of loyalty card holders from contact details."""

from __future__ import annotations

import secrets
from typing import Sequence, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from spinloyal_api.core.clock import utcnow
from spinloyal_api.core.settings import settings
from spinloyal_api.models.loyalty import ClientStatus, LoyaltyClient, PointsTransactionType
from spinloyal_api.models.merchant import Merchant
from spinloyal_api.observability.rewards import RewardObservabilityStore, get_reward_store
from spinloyal_api.services.errors import (
    ConfigurationError,
    NotFoundError,
    RaceLostError,
    RewardEngineError,
    ValidationError,
)
from spinloyal_api.services.loyalty.ledger import PointsLedger


CARD_ID_PREFIX = "STAR"
_CARD_ID_ATTEMPTS = 10


def normalize_phone(phone: str | None) -> str | None:
    if phone is None:
        return None
    cleaned = "".join(phone.split())
    return cleaned or None


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


class IdentityResolver:
    """Map a merchant plus phone or email to exactly one ``LoyaltyClient``."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: PointsLedger | None = None,
        observability: RewardObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._observability = observability or get_reward_store()
        self._ledger = ledger or PointsLedger(db_session, observability=self._observability)

    async def resolve_or_create(
        self,
        merchant_id: UUID,
        *,
        phone: str | None = None,
        email: str | None = None,
        name: str | None = None,
        user_token: str | None = None,
    ) -> Tuple[LoyaltyClient, bool]:
        """Return ``(client, is_new)``; welcome points are granted only on creation.

        A concurrent request that inserts the same contact first turns our
        insert into a unique-constraint violation; that is resolved by
        re-reading the winner's row and reporting it as found.
        """

        phone = normalize_phone(phone)
        email = normalize_email(email)
        if not phone and not email:
            raise ValidationError("A phone number or an email address is required")

        merchant = await self._db.get(Merchant, merchant_id)
        if merchant is None:
            raise NotFoundError("Merchant", merchant_id)
        if not merchant.loyalty_enabled:
            raise ConfigurationError("Loyalty program is not enabled for this merchant")

        existing = await self._find_by_contact(merchant_id, phone, email)
        if existing is not None:
            await self._touch(existing, user_token)
            self._observability.record_identity_resolution("matched")
            return existing, False

        client = LoyaltyClient(
            merchant_id=merchant_id,
            card_id=await self._generate_card_id(merchant_id),
            name=name.strip() if name and name.strip() else None,
            phone=phone,
            email=email,
            user_token=user_token,
            points=0,
            qr_code_data=secrets.token_urlsafe(24),
            status=ClientStatus.ACTIVE,
            last_visit=utcnow(),
        )
        self._db.add(client)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            winner = await self._find_by_contact(merchant_id, phone, email)
            if winner is None:
                logger.warning(
                    "Loyalty client insert conflicted without a matching contact",
                    merchant_id=str(merchant_id),
                )
                raise RaceLostError("Client registration conflicted; retry the request") from None
            logger.info(
                "Concurrent loyalty registration resolved to existing client",
                merchant_id=str(merchant_id),
                client_id=str(winner.id),
            )
            self._observability.record_identity_resolution("race_recovered")
            return winner, False

        welcome_points = (
            merchant.welcome_points if merchant.welcome_points is not None else settings.default_welcome_points
        )
        if welcome_points > 0:
            try:
                await self._ledger.apply_transaction(
                    client.id,
                    merchant_id,
                    PointsTransactionType.WELCOME,
                    welcome_points,
                    "Welcome bonus",
                )
            except (RewardEngineError, SQLAlchemyError):
                await self._db.rollback()
                raise

        self._observability.record_identity_resolution("created", session=self._db)
        logger.info(
            "Enrolled loyalty client",
            merchant_id=str(merchant_id),
            client_id=str(client.id),
            card_id=client.card_id,
            welcome_points=welcome_points,
        )
        return client, True

    async def lookup(
        self,
        merchant_id: UUID,
        *,
        client_id: UUID | None = None,
        qr_code: str | None = None,
        phone: str | None = None,
        email: str | None = None,
    ) -> LoyaltyClient:
        """Find a client by id, QR payload, phone or email (first criterion given wins)."""

        stmt = select(LoyaltyClient).where(LoyaltyClient.merchant_id == merchant_id)
        if client_id is not None:
            stmt = stmt.where(LoyaltyClient.id == client_id)
        elif qr_code:
            stmt = stmt.where(LoyaltyClient.qr_code_data == qr_code.strip())
        elif normalize_phone(phone):
            stmt = stmt.where(LoyaltyClient.phone == normalize_phone(phone))
        elif normalize_email(email):
            stmt = stmt.where(LoyaltyClient.email == normalize_email(email))
        else:
            raise ValidationError("Provide a client id, QR code, phone or email")

        client = (await self._db.execute(stmt)).scalar_one_or_none()
        if client is None:
            raise NotFoundError("Loyalty client", client_id or qr_code or phone or email)
        return client

    async def list_clients(self, merchant_id: UUID, *, limit: int | None = None) -> Sequence[LoyaltyClient]:
        """All of a merchant's card holders, newest first."""

        stmt = (
            select(LoyaltyClient)
            .where(LoyaltyClient.merchant_id == merchant_id)
            .order_by(LoyaltyClient.created_at.desc(), LoyaltyClient.card_id.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return (await self._db.execute(stmt)).scalars().all()

    async def update_client(
        self,
        client_id: UUID,
        merchant_id: UUID,
        *,
        name: str | None = None,
        phone: str | None = None,
        email: str | None = None,
        status: ClientStatus | None = None,
    ) -> LoyaltyClient:
        """Apply profile edits; contact changes keep the per-merchant uniqueness rules."""

        client = await self.lookup(merchant_id, client_id=client_id)
        if name is not None:
            client.name = name.strip() or None
        if phone is not None:
            client.phone = normalize_phone(phone)
        if email is not None:
            client.email = normalize_email(email)
        if status is not None:
            client.status = status
        if not client.phone and not client.email:
            raise ValidationError("A client must keep a phone number or an email address")

        try:
            await self._db.flush()
        except IntegrityError as exc:
            await self._db.rollback()
            raise ValidationError("Another client already uses this phone or email") from exc

        logger.info(
            "Updated loyalty client",
            client_id=str(client_id),
            merchant_id=str(merchant_id),
            status=client.status.value,
        )
        return client

    async def _find_by_contact(
        self,
        merchant_id: UUID,
        phone: str | None,
        email: str | None,
    ) -> LoyaltyClient | None:
        if phone:
            match = (
                await self._db.execute(
                    select(LoyaltyClient).where(
                        LoyaltyClient.merchant_id == merchant_id,
                        LoyaltyClient.phone == phone,
                    )
                )
            ).scalar_one_or_none()
            if match is not None:
                return match
        if email:
            return (
                await self._db.execute(
                    select(LoyaltyClient).where(
                        LoyaltyClient.merchant_id == merchant_id,
                        LoyaltyClient.email == email,
                    )
                )
            ).scalar_one_or_none()
        return None

    async def _touch(self, client: LoyaltyClient, user_token: str | None) -> None:
        client.last_visit = utcnow()
        if user_token:
            client.user_token = user_token
        await self._db.flush()

    async def _generate_card_id(self, merchant_id: UUID) -> str:
        year = utcnow().year
        for _ in range(_CARD_ID_ATTEMPTS):
            candidate = f"{CARD_ID_PREFIX}-{year}-{secrets.token_hex(2).upper()}"
            taken = await self._db.scalar(
                select(LoyaltyClient.id).where(
                    LoyaltyClient.merchant_id == merchant_id,
                    LoyaltyClient.card_id == candidate,
                )
            )
            if taken is None:
                return candidate
        return f"{CARD_ID_PREFIX}-{year}-{secrets.token_hex(4).upper()}"


__all__ = ["IdentityResolver", "normalize_email", "normalize_phone"]

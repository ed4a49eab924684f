"""
Credit Reservation Service - One free unlock per device, unlimited for subscribers.

NO DICTIONARIES - All operations use strongly typed domain models.

Free unlocks use reserve-then-check: the device counter is atomically
incremented and committed first, then the new value decides whether the
reservation stands. Every path that does not end in a grant returns the
reservation with a compensating decrement. No application-level locks.
"""

import time
from collections.abc import Callable
from datetime import datetime

from structlog import get_logger

from oneshot.config import Settings, settings
from oneshot.db.models import DeviceCredit, Product, UnlockGrant, utc_now
from oneshot.db.store import RecordStore
from oneshot.exceptions import (
    ConcurrencyError,
    DeviceBannedError,
    DeviceNotFoundError,
    ProductNotFoundError,
)
from oneshot.models.api import GrantType, UnlockOutcome
from oneshot.models.domain import (
    DeviceCreditData,
    UnlockIntent,
    UnlockResult,
    UnlockStatus,
    account_subject,
    device_subject,
)
from oneshot.observability.metrics import metrics
from oneshot.observability.tracing import trace_operation

logger = get_logger(__name__)

_GRANT_UNIQUE = ("subject_key", "product_id")


def _device_data(device: DeviceCredit) -> DeviceCreditData:
    return DeviceCreditData(
        device_id=device.device_id,
        credits_used=device.credits_used,
        is_banned=device.is_banned,
        ban_reason=device.ban_reason,
        linked_account_id=device.linked_account_id,
        emails_seen=tuple(device.emails_seen or ()),
        suspicious_activity=device.suspicious_activity,
        first_seen_at=device.first_seen_at,
        last_seen_at=device.last_seen_at,
    )


def _grant_criteria(
    product_id: int, device_id: str | None, account_id: str | None
) -> list[dict[str, object]]:
    criteria: list[dict[str, object]] = []
    if device_id:
        criteria.append({"product_id": product_id, "device_id": device_id})
    if account_id:
        criteria.append({"product_id": product_id, "account_id": account_id})
    return criteria


class CreditReservationService:
    """Grants product unlocks against per-device free credits or a subscription."""

    def __init__(
        self,
        store: RecordStore,
        clock: Callable[[], datetime] = utc_now,
        cfg: Settings = settings,
    ) -> None:
        """Initialize with a record store and an injectable UTC clock."""
        self.store = store
        self.clock = clock
        self.cfg = cfg

    # ========================================================================
    # Unlock
    # ========================================================================

    async def request_unlock(self, intent: UnlockIntent) -> UnlockResult:
        """
        Unlock a product for a device (and optionally an account).

        Outcomes:
        - GRANTED: a new grant was written (free credit or subscription)
        - ALREADY_UNLOCKED: a grant already existed, no credit consumed
        - UPGRADE_REQUIRED: the device's free credits are exhausted

        Raises:
            ProductNotFoundError: Product does not exist
            DeviceBannedError: Device is banned (no state change)
            DatabaseError: Storage failure (credit may remain reserved; the
                grant existence check protects any retry)
        """
        start = time.perf_counter()

        with trace_operation(
            "request_unlock",
            product_id=intent.product_id,
            device_id=intent.device_id,
            is_subscriber=intent.is_subscriber,
        ) as span:
            product = await self.store.get(Product, intent.product_id)
            if product is None:
                raise ProductNotFoundError(intent.product_id)

            device = await self._get_or_create_device(intent.device_id)
            if device.is_banned:
                logger.warning(
                    "unlock_denied_banned_device",
                    device_id=intent.device_id,
                    product_id=intent.product_id,
                )
                raise DeviceBannedError(device.device_id, device.ban_reason)

            await self.store.update(
                DeviceCredit, intent.device_id, {"last_seen_at": self.clock()}
            )
            await self.store.commit()

            existing = await self._find_grant(
                intent.product_id, intent.device_id, intent.account_id
            )
            if existing is not None:
                result = UnlockResult(
                    outcome=UnlockOutcome.ALREADY_UNLOCKED,
                    product_id=intent.product_id,
                    grant_type=GrantType(existing.grant_type),
                    credits_used=device.credits_used,
                    product_name=product.name,
                )
            elif intent.is_subscriber:
                result = await self._grant_subscription(intent, product, device)
            else:
                result = await self._reserve_free_credit(intent, product, device)

            span.set_attribute("outcome", result.outcome.value)

        metrics.record_unlock(result.outcome.value, time.perf_counter() - start)
        logger.info(
            "unlock_requested",
            product_id=intent.product_id,
            device_id=intent.device_id,
            outcome=result.outcome.value,
            grant_type=result.grant_type.value if result.grant_type else None,
            credits_used=result.credits_used,
        )
        return result

    async def _reserve_free_credit(
        self, intent: UnlockIntent, product: Product, device: DeviceCredit
    ) -> UnlockResult:
        """Reserve-then-check for a non-subscriber."""
        row = await self.store.increment(DeviceCredit, intent.device_id, {"credits_used": 1})
        if row is None:
            raise ConcurrencyError(f"device_credit:{intent.device_id}")
        await self.store.commit()
        credits_used = int(row["credits_used"])

        if credits_used > self.cfg.free_unlocks_per_device:
            await self._release_credit(intent.device_id, "credit_exhausted")
            return UnlockResult(
                outcome=UnlockOutcome.UPGRADE_REQUIRED,
                product_id=intent.product_id,
                grant_type=None,
                credits_used=credits_used - 1,
                product_name=product.name,
            )

        # A concurrent call for the same product may have granted in the meantime
        existing = await self._find_grant(intent.product_id, intent.device_id, intent.account_id)
        if existing is not None:
            await self._release_credit(intent.device_id, "already_unlocked")
            return UnlockResult(
                outcome=UnlockOutcome.ALREADY_UNLOCKED,
                product_id=intent.product_id,
                grant_type=GrantType(existing.grant_type),
                credits_used=credits_used - 1,
                product_name=product.name,
            )

        if not await self._create_grant(intent, GrantType.FREE_CREDIT):
            await self._release_credit(intent.device_id, "grant_conflict")
            return UnlockResult(
                outcome=UnlockOutcome.ALREADY_UNLOCKED,
                product_id=intent.product_id,
                grant_type=GrantType.FREE_CREDIT,
                credits_used=credits_used - 1,
                product_name=product.name,
            )

        await self._link_account(device, intent)
        await self.store.commit()

        return UnlockResult(
            outcome=UnlockOutcome.GRANTED,
            product_id=intent.product_id,
            grant_type=GrantType.FREE_CREDIT,
            credits_used=credits_used,
            product_name=product.name,
        )

    async def _grant_subscription(
        self, intent: UnlockIntent, product: Product, device: DeviceCredit
    ) -> UnlockResult:
        """Subscribers unlock without credit accounting."""
        created = await self._create_grant(intent, GrantType.SUBSCRIPTION)
        if created:
            await self._link_account(device, intent)
        await self.store.commit()

        return UnlockResult(
            outcome=UnlockOutcome.GRANTED if created else UnlockOutcome.ALREADY_UNLOCKED,
            product_id=intent.product_id,
            grant_type=GrantType.SUBSCRIPTION,
            credits_used=device.credits_used,
            product_name=product.name,
        )

    async def _release_credit(self, device_id: str, reason: str) -> None:
        """Compensating decrement for a reservation that did not end in a grant."""
        await self.store.increment(DeviceCredit, device_id, {"credits_used": -1})
        await self.store.commit()
        metrics.record_credit_rollback(reason)
        logger.info("credit_reservation_released", device_id=device_id, reason=reason)

    async def _create_grant(self, intent: UnlockIntent, grant_type: GrantType) -> bool:
        grant = UnlockGrant(
            subject_key=intent.subject_key,
            product_id=intent.product_id,
            device_id=intent.device_id,
            account_id=intent.account_id,
            email=intent.email,
            grant_type=grant_type.value,
            granted_at=self.clock(),
            session_id=intent.session_id,
            referral_source=intent.referral_source,
            source_product_id=intent.source_product_id,
        )
        return await self.store.create_if_absent(grant, unique=_GRANT_UNIQUE)

    async def _link_account(self, device: DeviceCredit, intent: UnlockIntent) -> None:
        """
        Associate account and email with the device.

        More distinct emails than the configured threshold flags the device as
        suspicious. Advisory only; never blocks an unlock.
        """
        if not intent.wants_account_link:
            return

        values: dict[str, object] = {}
        if intent.account_id and device.linked_account_id is None:
            values["linked_account_id"] = intent.account_id

        emails = list(device.emails_seen or ())
        if intent.email and intent.email not in emails:
            emails.append(intent.email)
            values["emails_seen"] = emails
            if len(emails) > self.cfg.suspicious_email_threshold:
                values["suspicious_activity"] = True
                if not device.suspicious_activity:
                    logger.warning(
                        "device_flagged_suspicious",
                        device_id=device.device_id,
                        emails_seen=len(emails),
                    )

        if values:
            await self.store.update(DeviceCredit, device.device_id, values)

    # ========================================================================
    # Reads
    # ========================================================================

    async def check_unlock_status(
        self,
        product_id: int,
        device_id: str | None = None,
        account_id: str | None = None,
        is_subscriber: bool = False,
    ) -> UnlockStatus:
        """Pure read. Subscribers are always reported unlocked."""
        if is_subscriber:
            return UnlockStatus(is_unlocked=True, grant_type=GrantType.SUBSCRIPTION)

        grant = await self._find_grant(product_id, device_id, account_id)
        if grant is None:
            return UnlockStatus(is_unlocked=False, grant_type=None)
        return UnlockStatus(is_unlocked=True, grant_type=GrantType(grant.grant_type))

    async def get_device(self, device_id: str) -> DeviceCreditData:
        """Get a device's credit record, raising DeviceNotFoundError if unseen."""
        device = await self.store.get(DeviceCredit, device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return _device_data(device)

    # ========================================================================
    # Admin
    # ========================================================================

    async def grant_unlock(
        self, product_id: int, device_id: str | None = None, account_id: str | None = None
    ) -> UnlockResult:
        """
        Operator grant, recorded against the account when one is given.

        Idempotent: an existing grant for the subject is reported as
        ALREADY_UNLOCKED and left unchanged.
        """
        if not device_id and not account_id:
            raise ValueError("device_id or account_id is required")

        product = await self.store.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        existing = await self._find_grant(product_id, device_id, account_id)
        if existing is not None:
            return UnlockResult(
                outcome=UnlockOutcome.ALREADY_UNLOCKED,
                product_id=product_id,
                grant_type=GrantType(existing.grant_type),
                credits_used=0,
                product_name=product.name,
            )

        subject_key = account_subject(account_id) if account_id else device_subject(device_id or "")
        grant = UnlockGrant(
            subject_key=subject_key,
            product_id=product_id,
            device_id=device_id,
            account_id=account_id,
            grant_type=GrantType.ADMIN_GRANT.value,
            granted_at=self.clock(),
        )
        created = await self.store.create_if_absent(grant, unique=_GRANT_UNIQUE)
        await self.store.commit()

        logger.info(
            "admin_unlock_granted",
            product_id=product_id,
            device_id=device_id,
            account_id=account_id,
            created=created,
        )
        return UnlockResult(
            outcome=UnlockOutcome.GRANTED if created else UnlockOutcome.ALREADY_UNLOCKED,
            product_id=product_id,
            grant_type=GrantType.ADMIN_GRANT,
            credits_used=0,
            product_name=product.name,
        )

    async def ban_device(self, device_id: str, reason: str) -> DeviceCreditData:
        """Ban a device from further unlocks."""
        if not await self.store.update(
            DeviceCredit, device_id, {"is_banned": True, "ban_reason": reason}
        ):
            raise DeviceNotFoundError(device_id)
        await self.store.commit()

        logger.warning("device_banned", device_id=device_id, reason=reason)
        return await self.get_device(device_id)

    async def unban_device(self, device_id: str) -> DeviceCreditData:
        """Lift a device ban. Credits already used stay used."""
        if not await self.store.update(
            DeviceCredit, device_id, {"is_banned": False, "ban_reason": None}
        ):
            raise DeviceNotFoundError(device_id)
        await self.store.commit()

        logger.info("device_unbanned", device_id=device_id)
        return await self.get_device(device_id)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _get_or_create_device(self, device_id: str) -> DeviceCredit:
        now = self.clock()
        created = await self.store.create_if_absent(
            DeviceCredit(device_id=device_id, first_seen_at=now, last_seen_at=now),
            unique=("device_id",),
        )
        if created:
            logger.info("device_first_seen", device_id=device_id)

        device = await self.store.get(DeviceCredit, device_id)
        if device is None:
            raise ConcurrencyError(f"device_credit:{device_id}")
        return device

    async def _find_grant(
        self, product_id: int, device_id: str | None, account_id: str | None
    ) -> UnlockGrant | None:
        return await self.store.find_any(
            UnlockGrant, *_grant_criteria(product_id, device_id, account_id)
        )

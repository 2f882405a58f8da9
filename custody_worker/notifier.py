"""
Ledger notifications for deposit state changes.

Delivery is best-effort: every event is one authenticated POST, failures are
logged and reported as False, never raised or retried here. Later cycles
re-derive state from the chain, so a lost event is not lost data.
"""

from typing import ClassVar, Optional, Union

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, SecretStr
from pydantic.alias_generators import to_camel

from .models import Deposit, format_amount

logger = structlog.get_logger()

API_KEY_HEADER = "x-internal-api-key"


class LedgerEvent(BaseModel):
    """Base for the closed set of ledger events. Serialised in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    kind: ClassVar[str]
    path: ClassVar[str]

    deposit_id: str

    def payload(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class DepositDetected(LedgerEvent):
    kind: ClassVar[str] = "deposit-detected"
    path: ClassVar[str] = "/api/internal/deposits/detected"

    wallet_address: str
    tx_hash: str
    network: str
    asset: str
    amount: str
    confirmations: int


class DepositConfirmed(LedgerEvent):
    kind: ClassVar[str] = "deposit-confirmed"
    path: ClassVar[str] = "/api/internal/deposits/confirmed"

    tx_hash: str
    confirmations: int


class DepositSwept(LedgerEvent):
    kind: ClassVar[str] = "deposit-swept"
    path: ClassVar[str] = "/api/internal/deposits/swept"

    sweep_tx_hash: str
    amount_swept: str


class NotificationClient:
    """Posts ledger events to the internal deposits API."""

    def __init__(
        self,
        base_url: str,
        api_key: Union[SecretStr, str, None],
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if isinstance(api_key, SecretStr):
            api_key = api_key.get_secret_value()
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key or None
        self.client = httpx.Client(timeout=timeout, transport=transport)

        if self._api_key is None:
            logger.warning("ledger_api_key_missing", detail="notifications will be skipped")

    @property
    def configured(self) -> bool:
        return self._api_key is not None

    def send(self, event: LedgerEvent) -> bool:
        """Deliver one event. Returns True on a 2xx response."""
        if self._api_key is None:
            logger.warning("ledger_notification_skipped", kind=event.kind, deposit_id=event.deposit_id)
            return False

        url = f"{self.base_url}{event.path}"
        try:
            response = self.client.post(
                url,
                json=event.payload(),
                headers={API_KEY_HEADER: self._api_key},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "ledger_notification_rejected",
                kind=event.kind,
                deposit_id=event.deposit_id,
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "ledger_notification_failed",
                kind=event.kind,
                deposit_id=event.deposit_id,
                error=str(e),
            )
            return False

        logger.info("ledger_notified", kind=event.kind, deposit_id=event.deposit_id)
        return True

    def deposit_detected(self, deposit: Deposit, wallet_address: str) -> bool:
        return self.send(
            DepositDetected(
                deposit_id=deposit.id,
                wallet_address=wallet_address,
                tx_hash=deposit.tx_hash,
                network=deposit.network.value,
                asset=deposit.asset.value,
                amount=format_amount(deposit.amount),
                confirmations=deposit.confirmations,
            )
        )

    def deposit_confirmed(self, deposit: Deposit) -> bool:
        return self.send(
            DepositConfirmed(
                deposit_id=deposit.id,
                tx_hash=deposit.tx_hash,
                confirmations=deposit.confirmations,
            )
        )

    def deposit_swept(self, deposit: Deposit, sweep_tx_hash: str) -> bool:
        return self.send(
            DepositSwept(
                deposit_id=deposit.id,
                sweep_tx_hash=sweep_tx_hash,
                amount_swept=format_amount(deposit.amount),
            )
        )

    def close(self) -> None:
        self.client.close()

"""
Signing capabilities.

A signing capability is anything that can authorize a write transaction:
the server key configured through HASHMARK_PRIVATE_KEY, or a wallet whose
state arrives as a stream of notifications (account / chain changes).

Wallet notifications are modelled as messages on a WalletChannel rather
than as ambient callbacks. The authentication workflow subscribes to the
channel through ``acquire()`` and proceeds once a capability is present.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

from eth_account import Account
from eth_account.signers.local import LocalAccount
from pydantic import BaseModel, ConfigDict, model_validator

from hashmark.app.core.config import Settings

logger = logging.getLogger("hashmark.signing")


# ----------------------------------------------------------------------
# Capability interfaces
# ----------------------------------------------------------------------

class SigningCapability(Protocol):
    @property
    def address(self) -> str:
        ...

    async def sign_transaction(self, transaction: Dict[str, Any]) -> bytes:
        ...


class SigningCapabilitySource(Protocol):
    def current(self) -> Optional[SigningCapability]:
        ...

    async def acquire(self) -> SigningCapability:
        ...


# ----------------------------------------------------------------------
# Server key
# ----------------------------------------------------------------------

class LocalAccountSigner:
    """
    Signs with a locally held key (the server wallet).
    """

    def __init__(self, account: LocalAccount) -> None:
        self._account = account

    @classmethod
    def from_private_key(cls, private_key: str) -> "LocalAccountSigner":
        return cls(Account.from_key(private_key))

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["LocalAccountSigner"]:
        """
        Build the server signer, or return None when no key is configured.
        """
        if not settings.server_signing_enabled:
            logger.info("server_signing_disabled")
            return None

        signer = cls.from_private_key(
            settings.private_key.get_secret_value().strip()
        )
        logger.info(
            "server_signing_enabled",
            extra={"signer_address": signer.address},
        )
        return signer

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_transaction(self, transaction: Dict[str, Any]) -> bytes:
        signed = self._account.sign_transaction(transaction)
        return bytes(signed.raw_transaction)


class StaticSigningCapability:
    """
    A capability source that never changes.

    With no capability, ``acquire()`` parks until the caller cancels it.
    Parking is a valid waiting state, not a failure.
    """

    def __init__(self, capability: Optional[SigningCapability]) -> None:
        self._capability = capability

    def current(self) -> Optional[SigningCapability]:
        return self._capability

    async def acquire(self) -> SigningCapability:
        if self._capability is not None:
            return self._capability

        await asyncio.Event().wait()
        raise AssertionError("unreachable")


# ----------------------------------------------------------------------
# Wallet channel
# ----------------------------------------------------------------------

class WalletEventType(str, Enum):
    CONNECTED = "connected"
    ACCOUNT_CHANGED = "account_changed"
    CHAIN_CHANGED = "chain_changed"
    DISCONNECTED = "disconnected"


class WalletEvent(BaseModel):
    """
    A single wallet notification.

    CONNECTED and ACCOUNT_CHANGED carry the capability for the now-active
    account. CHAIN_CHANGED carries the new chain id.
    """

    event_type: WalletEventType
    capability: Optional[Any] = None
    chain_id: Optional[int] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    @model_validator(mode="after")
    def capability_required_for_accounts(self) -> "WalletEvent":
        if (
            self.event_type
            in {WalletEventType.CONNECTED, WalletEventType.ACCOUNT_CHANGED}
            and self.capability is None
        ):
            raise ValueError(
                f"{self.event_type.value} events must carry a capability"
            )
        if self.event_type == WalletEventType.CHAIN_CHANGED and self.chain_id is None:
            raise ValueError("chain_changed events must carry a chain_id")
        return self


class WalletChannel:
    """
    Message channel for wallet state.

    Reconnect-on-change semantics:
    - CONNECTED / ACCOUNT_CHANGED replace the current capability
    - CHAIN_CHANGED drops the capability until the wallet re-announces
      itself with CONNECTED (the signer is bound to a chain)
    - DISCONNECTED drops the capability

    When ``expected_chain_id`` is set, a capability announced on any other
    chain is not usable.
    """

    def __init__(self, *, expected_chain_id: Optional[int] = None) -> None:
        self._expected_chain_id = expected_chain_id
        self._capability: Optional[SigningCapability] = None
        self._chain_id: Optional[int] = None
        self._condition = asyncio.Condition()
        self._subscribers: List[asyncio.Queue[WalletEvent]] = []

    @property
    def chain_id(self) -> Optional[int]:
        return self._chain_id

    def current(self) -> Optional[SigningCapability]:
        if self._capability is None:
            return None
        if (
            self._expected_chain_id is not None
            and self._chain_id != self._expected_chain_id
        ):
            return None
        return self._capability

    async def publish(self, event: WalletEvent) -> None:
        async with self._condition:
            self._apply(event)
            self._condition.notify_all()

        for queue in list(self._subscribers):
            queue.put_nowait(event)

    async def acquire(self) -> SigningCapability:
        async with self._condition:
            await self._condition.wait_for(lambda: self.current() is not None)
            return self.current()

    def events(self) -> "WalletSubscription":
        """
        Subscribe to wallet notifications published after this call.

        The subscription is registered immediately, before the first
        iteration. Close it (or use it as a context manager) to stop
        receiving events.
        """
        queue: asyncio.Queue[WalletEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return WalletSubscription(queue, self._unsubscribe)

    def _unsubscribe(self, queue: "asyncio.Queue[WalletEvent]") -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _apply(self, event: WalletEvent) -> None:
        if event.event_type in {
            WalletEventType.CONNECTED,
            WalletEventType.ACCOUNT_CHANGED,
        }:
            self._capability = event.capability
            if event.chain_id is not None:
                self._chain_id = event.chain_id

        elif event.event_type == WalletEventType.CHAIN_CHANGED:
            self._chain_id = event.chain_id
            self._capability = None

        elif event.event_type == WalletEventType.DISCONNECTED:
            self._capability = None

        logger.info(
            "wallet_event_applied",
            extra={
                "event_type": event.event_type.value,
                "chain_id": self._chain_id,
                "capability_available": self.current() is not None,
            },
        )


class WalletSubscription:
    """
    Ordered stream of wallet events for one subscriber.
    """

    def __init__(
        self,
        queue: "asyncio.Queue[WalletEvent]",
        unsubscribe: Callable[["asyncio.Queue[WalletEvent]"], None],
    ) -> None:
        self._queue = queue
        self._unsubscribe = unsubscribe
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._unsubscribe(self._queue)

    def __aiter__(self) -> AsyncIterator[WalletEvent]:
        return self

    async def __anext__(self) -> WalletEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self) -> "WalletSubscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

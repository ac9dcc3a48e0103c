"""
Blockchain settlement adapters.

Looks up a transfer by transaction hash on an EVM explorer (Etherscan-style
``tokentx`` API) or on Cardano through the Blockfrost REST API, and waits
for it to become final with a cancellable, deadline-bounded poll.
"""
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
)
from tenacity.stop import stop_base

from payrail.config import ChainConfig, Settings, TokenConfig
from payrail.core.amounts import scale_token_value
from payrail.core.enums import NetworkType, PaymentType
from payrail.core.exceptions import (
    ConfirmationTimeoutError,
    ExternalServiceError,
    LookupCancelledError,
    NotFoundError,
)
from payrail.monitoring.metrics import (
    adapter_errors_total,
    adapter_request_duration_seconds,
    confirmation_poll_attempts,
)

logger = structlog.get_logger(__name__)

RAIL = PaymentType.CRYPTO.value


@dataclass(frozen=True)
class CryptoLookup:
    """A transfer found on chain, amount already scaled by token decimals."""

    tx_hash: str
    amount: Decimal
    sender: str
    recipient: str
    confirmed: bool
    token: str
    date: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "amount": str(self.amount),
            "sender": self.sender,
            "recipient": self.recipient,
            "confirmed": self.confirmed,
            "token": self.token,
            "date": self.date.isoformat() if self.date else None,
            "raw": self.raw,
        }


class _Unresolved(Exception):
    """The transfer is not final yet; poll again."""


class _NotYetVisible(_Unresolved):
    pass


class _AwaitingConfirmation(_Unresolved):
    def __init__(self, depth: int):
        super().__init__(f"{depth} confirmations")
        self.depth = depth


class _Cancelled(Exception):
    pass


class stop_when_event_set(stop_base):
    """Stop retrying once the given event is set."""

    def __init__(self, event: threading.Event):
        self.event = event

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.event.is_set()


class ConfirmationPoller:
    """
    Repeats a lookup until the transfer is final.

    Bounded by attempts, by an optional overall timeout, and by a cancel
    event that also interrupts the sleep between attempts.
    """

    def __init__(self, attempts: int = 20, interval: float = 1.0):
        self.attempts = attempts
        self.interval = interval

    def run(
        self,
        probe: Callable[[], CryptoLookup],
        network: str,
        reference: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CryptoLookup:
        """
        Call ``probe`` until it returns or a bound is reached.

        Raises:
            NotFoundError: The transaction never appeared
            ConfirmationTimeoutError: It appeared but stayed below the confirmation depth
            LookupCancelledError: ``cancel_event`` was set
        """
        event = cancel_event or threading.Event()
        if event.is_set():
            raise self._cancelled(network, reference)

        deadline = time.monotonic() + timeout if timeout is not None else None

        def attempt() -> CryptoLookup:
            if event.is_set():
                raise _Cancelled()
            return probe()

        def wait(retry_state: RetryCallState) -> float:
            if deadline is None:
                return self.interval
            return max(0.0, min(self.interval, deadline - time.monotonic()))

        stop = stop_after_attempt(self.attempts) | stop_when_event_set(event)
        if timeout is not None:
            stop = stop | stop_after_delay(timeout)

        retrying = Retrying(
            stop=stop,
            wait=wait,
            retry=retry_if_exception_type(_Unresolved),
            sleep=event.wait,
            reraise=True,
        )

        try:
            return retrying(attempt)
        except _Cancelled as e:
            raise self._cancelled(network, reference) from e
        except _NotYetVisible as e:
            if event.is_set():
                raise self._cancelled(network, reference) from e
            raise NotFoundError(f"Transaction {reference} not found on {network}") from e
        except _AwaitingConfirmation as e:
            if event.is_set():
                raise self._cancelled(network, reference) from e
            raise ConfirmationTimeoutError(
                f"Transaction {reference} on {network} stuck at {e.depth} confirmations",
                rail=RAIL,
                service=network,
                reference=reference,
                error_type="confirmation_timeout",
            ) from e
        finally:
            confirmation_poll_attempts.labels(network=network).observe(
                retrying.statistics.get("attempt_number", 0)
            )

    @staticmethod
    def _cancelled(network: str, reference: str) -> LookupCancelledError:
        logger.info("confirmation_poll_cancelled", network=network, tx_hash=reference)
        return LookupCancelledError(
            f"Lookup of {reference} on {network} was cancelled",
            rail=RAIL,
            service=network,
            reference=reference,
            error_type="cancelled",
        )


class ChainAdapter(ABC):
    """Reads transfers from one configured network."""

    def __init__(
        self,
        config: ChainConfig,
        http: Optional[httpx.Client] = None,
        poller: Optional[ConfirmationPoller] = None,
        timeout: float = 10.0,
    ):
        self.config = config
        self.http = http or httpx.Client(timeout=timeout)
        self.poller = poller or ConfirmationPoller()

    @property
    def name(self) -> str:
        return self.config.name

    def lookup(
        self,
        tx_hash: str,
        token: TokenConfig,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CryptoLookup:
        """Find ``tx_hash`` and wait for it to become final."""
        logger.info(
            "crypto_lookup_started",
            network=self.name,
            tx_hash=tx_hash,
            token=token.address,
        )
        result = self.poller.run(
            lambda: self._probe(tx_hash, token),
            network=self.name,
            reference=tx_hash,
            timeout=timeout,
            cancel_event=cancel_event,
        )
        logger.info(
            "crypto_lookup_resolved",
            network=self.name,
            tx_hash=tx_hash,
            amount=str(result.amount),
            confirmed=result.confirmed,
        )
        return result

    @abstractmethod
    def _probe(self, tx_hash: str, token: TokenConfig) -> CryptoLookup:
        """One lookup attempt; raises _Unresolved while the transfer is not final."""

    def _error(
        self, message: str, reference: str, error_type: str, original: Optional[Exception] = None
    ) -> ExternalServiceError:
        adapter_errors_total.labels(rail=RAIL, error_type=error_type).inc()
        logger.error(
            "explorer_request_failed",
            network=self.name,
            tx_hash=reference,
            error_type=error_type,
            error=message,
        )
        return ExternalServiceError(
            message,
            rail=RAIL,
            service=self.name,
            reference=reference,
            error_type=error_type,
            original_error=original,
        )

    def _get(
        self,
        url: str,
        reference: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        missing_ok: bool = False,
    ) -> Any:
        """GET a JSON document; returns None on 404 when ``missing_ok``."""
        with adapter_request_duration_seconds.labels(rail=RAIL, operation=operation).time():
            try:
                response = self.http.get(url, params=params, headers=headers)
                if missing_ok and response.status_code == 404:
                    return None
                response.raise_for_status()
                return response.json()
            except httpx.TimeoutException as e:
                raise self._error(
                    f"{self.name} explorer timed out: {e}", reference, "timeout", e
                ) from e
            except httpx.HTTPStatusError as e:
                raise self._error(
                    f"{self.name} explorer returned {e.response.status_code}",
                    reference,
                    "http_status",
                    e,
                ) from e
            except httpx.HTTPError as e:
                raise self._error(
                    f"Cannot reach {self.name} explorer: {e}", reference, "transport", e
                ) from e
            except ValueError as e:
                raise self._error(
                    f"{self.name} explorer returned invalid JSON", reference, "decode", e
                ) from e


class EvmChainAdapter(ChainAdapter):
    """Etherscan-compatible explorer lookup of ERC-20 transfers."""

    def __init__(self, *args: Any, confirmation_depth: int = 10, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.confirmation_depth = confirmation_depth

    def _matches(self, row: Dict[str, Any], tx_hash: str, token: TokenConfig) -> bool:
        if str(row.get("hash", "")).lower() != tx_hash.lower():
            return False
        if token.address and str(row.get("contractAddress", "")).lower() != token.address.lower():
            return False
        deposit = self.config.deposit_address
        if deposit and str(row.get("to", "")).lower() != deposit.lower():
            return False
        return True

    def _probe(self, tx_hash: str, token: TokenConfig) -> CryptoLookup:
        payload = self._get(
            self.config.explorer,
            tx_hash,
            "evm_tokentx",
            params={
                "module": "account",
                "action": "tokentx",
                "address": self.config.contract_address,
                "sort": "desc",
                "apikey": self.config.api_key.get_secret_value(),
            },
        )
        result = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(result, list):
            message = payload.get("message") if isinstance(payload, dict) else None
            raise self._error(
                f"{self.name} explorer error: {message or 'malformed response'}",
                tx_hash,
                "decode",
            )

        row = next((r for r in result if self._matches(r, tx_hash, token)), None)
        if row is None:
            raise _NotYetVisible(tx_hash)

        try:
            depth = int(row.get("confirmations") or 0)
            timestamp = row.get("timeStamp")
            date = datetime.fromtimestamp(int(timestamp), tz=timezone.utc) if timestamp else None
        except ValueError as e:
            raise self._error(f"Malformed transfer row for {tx_hash}", tx_hash, "decode", e) from e

        if depth < self.confirmation_depth:
            logger.debug(
                "awaiting_confirmations",
                network=self.name,
                tx_hash=tx_hash,
                confirmations=depth,
                required=self.confirmation_depth,
            )
            raise _AwaitingConfirmation(depth)

        return CryptoLookup(
            tx_hash=row.get("hash", tx_hash),
            amount=scale_token_value(row.get("value", ""), row.get("tokenDecimal") or token.decimals),
            sender=row.get("from", ""),
            recipient=row.get("to", ""),
            confirmed=True,
            token=token.address,
            date=date,
            raw=row,
        )


class CardanoChainAdapter(ChainAdapter):
    """
    Blockfrost lookup of a Cardano transaction.

    Blockfrost only serves transactions that are on chain, so a returned
    transaction is always reported confirmed.
    """

    def _headers(self) -> Dict[str, str]:
        return {"project_id": self.config.api_key.get_secret_value()}

    def _probe(self, tx_hash: str, token: TokenConfig) -> CryptoLookup:
        base = self.config.explorer.rstrip("/")
        headers = self._headers()

        tx = self._get(f"{base}/txs/{tx_hash}", tx_hash, "cardano_tx", headers=headers, missing_ok=True)
        if tx is None:
            raise _NotYetVisible(tx_hash)
        utxos = self._get(f"{base}/txs/{tx_hash}/utxos", tx_hash, "cardano_utxos", headers=headers)
        try:
            block_ref = tx["block"]
        except (KeyError, TypeError) as e:
            raise self._error(f"Malformed transaction {tx_hash}", tx_hash, "decode", e) from e
        block = self._get(f"{base}/blocks/{block_ref}", tx_hash, "cardano_block", headers=headers)

        try:
            return self._summarize(tx_hash, token, tx, utxos, block)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise self._error(f"Malformed UTXO set for {tx_hash}", tx_hash, "decode", e) from e

    def _summarize(
        self,
        tx_hash: str,
        token: TokenConfig,
        tx: Dict[str, Any],
        utxos: Dict[str, Any],
        block: Dict[str, Any],
    ) -> CryptoLookup:
        unit = token.address or "lovelace"
        inputs: List[Dict[str, Any]] = utxos.get("inputs") or []
        outputs: List[Dict[str, Any]] = utxos.get("outputs") or []
        sender = inputs[0].get("address", "") if inputs else ""

        recipient = self.config.deposit_address
        if not recipient:
            recipient = next(
                (
                    o.get("address", "")
                    for o in outputs
                    if o.get("address") != sender
                    and any(a.get("unit") == unit for a in o.get("amount", []))
                ),
                "",
            )

        quantity = sum(
            int(a.get("quantity", 0))
            for o in outputs
            if o.get("address") == recipient
            for a in o.get("amount", [])
            if a.get("unit") == unit
        )
        block_time = block.get("time")

        return CryptoLookup(
            tx_hash=tx.get("hash", tx_hash),
            amount=scale_token_value(str(quantity), token.decimals),
            sender=sender,
            recipient=recipient,
            confirmed=True,
            token=token.address,
            date=datetime.fromtimestamp(int(block_time), tz=timezone.utc) if block_time else None,
            raw={"info": tx, "utxos": utxos, "block": block},
        )


CHAIN_TYPES = {
    NetworkType.EVM: EvmChainAdapter,
    NetworkType.CARDANO: CardanoChainAdapter,
}


class CryptoSettlementAdapter:
    """Routes lookups to the chain that carries a token address."""

    def __init__(self, chains: List[ChainAdapter]):
        self.chains = list(chains)
        self._tokens: Dict[str, tuple] = {}
        for chain in self.chains:
            for token in chain.config.tokens:
                self._tokens[token.address.lower()] = (chain, token)

    @classmethod
    def from_settings(
        cls, settings: Settings, http: Optional[httpx.Client] = None
    ) -> "CryptoSettlementAdapter":
        """Build one adapter per configured chain, sharing a poller."""
        poller = ConfirmationPoller(
            attempts=settings.confirmation_poll_attempts,
            interval=settings.confirmation_poll_interval,
        )
        http = http or httpx.Client(timeout=settings.http_timeout)
        chains: List[ChainAdapter] = []
        for config in settings.chains:
            kwargs: Dict[str, Any] = {"http": http, "poller": poller}
            if config.type == NetworkType.EVM:
                kwargs["confirmation_depth"] = settings.confirmation_depth
            chains.append(CHAIN_TYPES[config.type](config, **kwargs))
        return cls(chains)

    def has_token(self, token_address: str) -> bool:
        return token_address.lower() in self._tokens

    def lookup(
        self,
        tx_hash: str,
        token_address: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CryptoLookup:
        """
        Look up a transfer of ``token_address`` on whichever chain carries it.

        Raises:
            NotFoundError: No configured chain has the token, or the transaction never appeared
            ExternalServiceError: Transport or decode failure, or polling timed out / was cancelled
        """
        try:
            chain, token = self._tokens[token_address.lower()]
        except KeyError as e:
            raise NotFoundError(f"Token address {token_address} is not configured") from e
        return chain.lookup(tx_hash, token, timeout=timeout, cancel_event=cancel_event)

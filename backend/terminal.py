"""
Payment Terminal
Operator-side virtual card terminal: amount entry, hosted checkout QR code,
and confirmation pushed from the invoice change feed.

State lives in an immutable TerminalState and only changes through reduce().
TerminalSession owns the resources for one open terminal (feed subscription,
consumer task, auto-dismiss timer) and releases all of them in close().
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from config import settings
from realtime import ChangeEvent, ChangeFeed, ChannelError, RemoteChangeFeed, change_feed
from tier_policy import TierLike, has_financing_access

logger = logging.getLogger(__name__)

SCAN_METHOD = "scan"
DECIMAL_KEY = "."
AMOUNT_KEYS = frozenset("0123456789.")


class TerminalPhase(str, enum.Enum):
    IDLE = "idle"
    AMOUNT_ENTRY = "amount_entry"
    AWAITING_QR = "awaiting_qr"
    QR_DISPLAYED = "qr_displayed"
    PAYMENT_CONFIRMED = "payment_confirmed"


@dataclass(frozen=True)
class PaymentConfirmation:
    amount: float
    receipt_number: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    invoice_id: Optional[int] = None


@dataclass(frozen=True)
class TerminalState:
    phase: TerminalPhase = TerminalPhase.IDLE
    amount: str = ""
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None
    payment: Optional[PaymentConfirmation] = None
    error: Optional[str] = None

    @property
    def can_charge(self) -> bool:
        return self.phase == TerminalPhase.AMOUNT_ENTRY and parse_amount(self.amount) > 0


# Actions
@dataclass(frozen=True)
class KeyPressed:
    key: str


@dataclass(frozen=True)
class Backspace:
    pass


@dataclass(frozen=True)
class ChargeRequested:
    pass


@dataclass(frozen=True)
class CheckoutCreated:
    checkout_url: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class CheckoutFailed:
    message: str


@dataclass(frozen=True)
class PaymentObserved:
    confirmation: PaymentConfirmation


@dataclass(frozen=True)
class Dismissed:
    pass


@dataclass(frozen=True)
class Cleared:
    pass


IDLE_STATE = TerminalState()


def parse_amount(amount: str) -> Decimal:
    """Numeric value of an amount buffer; unparseable buffers ('', '.') are zero."""
    try:
        return Decimal(amount) if amount else Decimal(0)
    except InvalidOperation:
        return Decimal(0)


def append_key(amount: str, key: str, max_amount: Decimal) -> str:
    """Apply one keypad press to the amount buffer, returning the buffer unchanged when rejected."""
    if key not in AMOUNT_KEYS:
        return amount
    if amount == "0" and key != DECIMAL_KEY:
        return key
    if key == DECIMAL_KEY and DECIMAL_KEY in amount:
        return amount

    candidate = amount + key
    _, _, fraction = candidate.partition(DECIMAL_KEY)
    if len(fraction) > 2:
        return amount
    if parse_amount(candidate) > max_amount:
        return amount
    return candidate


def reduce(state: TerminalState, action, max_amount: Decimal = Decimal("99999.99")) -> TerminalState:
    """
    The terminal's only transition function. Actions that do not apply to the
    current phase return the state object unchanged.
    """
    phase = state.phase

    if isinstance(action, KeyPressed):
        if phase not in (TerminalPhase.IDLE, TerminalPhase.AMOUNT_ENTRY):
            return state
        amount = append_key(state.amount, action.key, max_amount)
        if amount == state.amount:
            return state
        return replace(state, phase=TerminalPhase.AMOUNT_ENTRY, amount=amount, error=None)

    if isinstance(action, Backspace):
        if phase != TerminalPhase.AMOUNT_ENTRY:
            return state
        amount = state.amount[:-1]
        if not amount:
            return IDLE_STATE
        return replace(state, amount=amount)

    if isinstance(action, ChargeRequested):
        if not state.can_charge:
            return state
        return replace(state, phase=TerminalPhase.AWAITING_QR, error=None)

    if isinstance(action, CheckoutCreated):
        if phase != TerminalPhase.AWAITING_QR:
            return state
        return replace(
            state,
            phase=TerminalPhase.QR_DISPLAYED,
            checkout_url=action.checkout_url,
            session_id=action.session_id,
        )

    if isinstance(action, CheckoutFailed):
        if phase != TerminalPhase.AWAITING_QR:
            return state
        # Amount is kept so the operator can retry without re-entering it
        return replace(state, phase=TerminalPhase.AMOUNT_ENTRY, error=action.message)

    if isinstance(action, PaymentObserved):
        if phase not in (TerminalPhase.AWAITING_QR, TerminalPhase.QR_DISPLAYED):
            return state
        return replace(state, phase=TerminalPhase.PAYMENT_CONFIRMED, payment=action.confirmation, error=None)

    if isinstance(action, Dismissed):
        if phase != TerminalPhase.PAYMENT_CONFIRMED:
            return state
        return IDLE_STATE

    if isinstance(action, Cleared):
        if phase not in (TerminalPhase.AMOUNT_ENTRY, TerminalPhase.QR_DISPLAYED):
            return state
        return IDLE_STATE

    raise TypeError(f"Unknown terminal action: {action!r}")


def financing_badge_visible(state: TerminalState, tier: TierLike) -> bool:
    """'Financing available; you are paid in full today' - informational only."""
    return bool(state.amount) and has_financing_access(tier)


def fallback_receipt_number() -> str:
    return f"RCP-{int(time.time() * 1000) % 1_000_000:06d}"


def _to_float(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def confirmation_from_record(record) -> PaymentConfirmation:
    return PaymentConfirmation(
        amount=_to_float(record.get("total_amount", record.get("amount"))),
        receipt_number=record.get("invoice_number") or fallback_receipt_number(),
        customer_name=record.get("customer_name"),
        customer_email=record.get("customer_email"),
        invoice_id=record.get("id", record.get("invoice_id")),
    )


def confirmation_from_event(event: ChangeEvent) -> Optional[PaymentConfirmation]:
    """A confirmation only for an invoice UPDATE whose status just became 'paid'."""
    if event.table != "invoices" or event.event_type != "UPDATE":
        return None
    if event.new.get("status") != "paid" or event.old.get("status") == "paid":
        return None
    return confirmation_from_record(event.new)


# ==================== CHECKOUT CLIENT ====================

class CheckoutRequestError(Exception):
    """Checkout session request failed (transport, HTTP status or provider error)."""


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: str
    session_id: Optional[str] = None
    invoice_id: Optional[int] = None


class CheckoutClient:
    """HTTP client for the terminal checkout endpoints"""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = settings.TERMINAL_API_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0
    ):
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        try:
            response = await self._client.request(method, path, json=json, headers=self._headers())
        except httpx.HTTPError as e:
            raise CheckoutRequestError(f"Network error: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if data.get("error"):
            raise CheckoutRequestError(str(data["error"]))
        if response.status_code >= 400:
            detail = data.get("detail")
            message = detail if isinstance(detail, str) else f"Request failed with status {response.status_code}"
            raise CheckoutRequestError(message)
        return data

    async def create_session(self, tenant_id: int, amount: float, method: str = SCAN_METHOD) -> CheckoutResult:
        data = await self._request("POST", "/api/terminal/checkout", {
            "tenantId": tenant_id,
            "amount": amount,
            "method": method,
        })
        checkout_url = data.get("checkoutUrl")
        if not checkout_url:
            raise CheckoutRequestError("Failed to generate payment QR code")
        return CheckoutResult(
            checkout_url=checkout_url,
            session_id=data.get("sessionId"),
            invoice_id=data.get("invoiceId"),
        )

    async def fetch_session_status(self, session_id: str) -> dict:
        return await self._request("GET", f"/api/terminal/sessions/{session_id}")

    async def void_session(self, session_id: str) -> dict:
        return await self._request("POST", f"/api/terminal/sessions/{session_id}/void")


# ==================== TERMINAL SESSION ====================

class TerminalSession:
    """
    One open terminal for one tenant.

    The feed subscription is taken in open(), before any charge can be made, and
    held for the whole session so a payment completed right after the QR code
    appears is never missed.
    """

    def __init__(
        self,
        tenant_id: int,
        tier: TierLike,
        checkout: CheckoutClient,
        feed: Union[ChangeFeed, RemoteChangeFeed] = change_feed,
        on_payment_success: Optional[Callable[[PaymentConfirmation], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        auto_dismiss_seconds: float = settings.TERMINAL_AUTO_DISMISS_SECONDS,
        max_amount: float = settings.TERMINAL_MAX_AMOUNT,
        void_on_clear: bool = True,
        resubscribe_wait: float = 1.0
    ):
        self.tenant_id = tenant_id
        self.tier = tier
        self.state = IDLE_STATE
        self.is_open = False
        self._checkout = checkout
        self._feed = feed
        self._on_payment_success = on_payment_success
        self._on_error = on_error
        self._auto_dismiss_seconds = auto_dismiss_seconds
        self._max_amount = Decimal(str(max_amount))
        self._void_on_clear = void_on_clear
        self._resubscribe_wait = resubscribe_wait
        self._subscription = None
        self._consumer: Optional[asyncio.Task] = None
        self._dismiss_handle: Optional[asyncio.TimerHandle] = None
        self._dismiss_token: Optional[object] = None
        self._charging = False

    @property
    def financing_badge_visible(self) -> bool:
        return financing_badge_visible(self.state, self.tier)

    async def open(self) -> "TerminalSession":
        if self.is_open:
            return self
        self.state = IDLE_STATE
        self._subscription = await self._feed.subscribe("invoices", self.tenant_id).connect()
        self.is_open = True
        self._consumer = asyncio.create_task(self._consume())
        logger.info(f"Terminal opened for tenant {self.tenant_id}")
        return self

    async def close(self) -> None:
        """Release the timer, the consumer task and the subscription. Safe to call twice."""
        self.is_open = False
        self._cancel_auto_dismiss()

        consumer, self._consumer = self._consumer, None
        if consumer and consumer is not asyncio.current_task():
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass

        subscription, self._subscription = self._subscription, None
        if subscription:
            await subscription.aclose()
        self.state = IDLE_STATE

    async def __aenter__(self) -> "TerminalSession":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
        return False

    def dispatch(self, action) -> TerminalState:
        previous = self.state
        self.state = reduce(previous, action, self._max_amount)
        if (
            self.state.phase == TerminalPhase.PAYMENT_CONFIRMED
            and previous.phase != TerminalPhase.PAYMENT_CONFIRMED
        ):
            self._arm_auto_dismiss()
        return self.state

    # Keypad
    def press(self, key: str) -> TerminalState:
        return self.dispatch(KeyPressed(key))

    def backspace(self) -> TerminalState:
        return self.dispatch(Backspace())

    async def charge(self) -> TerminalState:
        """
        Request a checkout session for the entered amount. Ignored while a
        request is already in flight, so repeated taps cannot create duplicates.
        """
        if not self.is_open or self._charging:
            return self.state
        if self.dispatch(ChargeRequested()).phase != TerminalPhase.AWAITING_QR:
            return self.state

        self._charging = True
        try:
            result = await self._checkout.create_session(self.tenant_id, float(parse_amount(self.state.amount)))
        except CheckoutRequestError as e:
            logger.error(f"Failed to generate QR code for tenant {self.tenant_id}: {e}")
            if self.is_open:
                self.dispatch(CheckoutFailed(str(e) or "Failed to generate payment QR code"))
                if self._on_error:
                    self._on_error(self.state.error)
            return self.state
        finally:
            self._charging = False

        if self.is_open:
            self.dispatch(CheckoutCreated(result.checkout_url, result.session_id))
        return self.state

    async def clear(self) -> TerminalState:
        """Operator 'Clear': back to idle, voiding any checkout session left on screen."""
        previous = self.state
        if self.dispatch(Cleared()) is previous:
            return self.state

        if self._void_on_clear and previous.session_id:
            try:
                await self._checkout.void_session(previous.session_id)
            except CheckoutRequestError as e:
                logger.warning(f"Could not void checkout session {previous.session_id}: {e}")
        return self.state

    def dismiss(self) -> None:
        """Operator dismissed the confirmation before the timer fired."""
        self._finish_confirmation(self._dismiss_token)

    # Confirmation lifecycle
    def _arm_auto_dismiss(self) -> None:
        self._cancel_auto_dismiss()
        token = object()
        self._dismiss_token = token
        loop = asyncio.get_running_loop()
        self._dismiss_handle = loop.call_later(self._auto_dismiss_seconds, self._finish_confirmation, token)

    def _cancel_auto_dismiss(self) -> None:
        self._dismiss_token = None
        if self._dismiss_handle:
            self._dismiss_handle.cancel()
            self._dismiss_handle = None

    def _finish_confirmation(self, token: Optional[object]) -> None:
        # Timer and manual dismiss share one token; whichever runs first consumes it
        if token is None or token is not self._dismiss_token:
            return
        self._cancel_auto_dismiss()

        payment = self.state.payment
        self.dispatch(Dismissed())
        if payment and self._on_payment_success:
            self._on_payment_success(payment)

    # Change feed
    def handle_event(self, event: ChangeEvent) -> None:
        if not self.is_open or event.tenant_id != self.tenant_id:
            return
        confirmation = confirmation_from_event(event)
        if confirmation is None:
            return
        logger.info(f"✅ Payment received via realtime: {confirmation.receipt_number}")
        self.dispatch(PaymentObserved(confirmation))

    async def _consume(self) -> None:
        while self.is_open:
            try:
                event = await self._subscription.get()
            except ChannelError as e:
                logger.error(f"Invoice feed dropped for tenant {self.tenant_id}: {e}")
                try:
                    await self._resubscribe()
                except ChannelError as e:
                    logger.error(f"Could not restore invoice feed for tenant {self.tenant_id}: {e}")
                    if self._on_error:
                        self._on_error("Lost connection to payment updates")
                    return
                continue
            if event is None:
                return
            self.handle_event(event)

    async def _resubscribe(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription:
            await subscription.aclose()

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(5),
            wait=wait_fixed(self._resubscribe_wait),
            retry=retry_if_exception_type(ChannelError),
            reraise=True
        ):
            with attempt:
                self._subscription = await self._feed.subscribe("invoices", self.tenant_id).connect()

        await self.reconcile()

    async def reconcile(self) -> None:
        """
        Re-read the pending checkout's invoice after a feed reconnect so a
        payment made while disconnected still confirms.
        """
        state = self.state
        if state.phase not in (TerminalPhase.AWAITING_QR, TerminalPhase.QR_DISPLAYED) or not state.session_id:
            return
        try:
            record = await self._checkout.fetch_session_status(state.session_id)
        except CheckoutRequestError as e:
            logger.warning(f"Reconcile failed for checkout session {state.session_id}: {e}")
            return

        if record.get("status") == "paid" and self.is_open and self.state.session_id == state.session_id:
            logger.info(f"Payment for session {state.session_id} recovered after reconnect")
            self.dispatch(PaymentObserved(confirmation_from_record(record)))

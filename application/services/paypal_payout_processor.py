"""
PayPal batch payout engine (classic MassPay over NVP).

Eligible users are paid in batches of at most ``recipients_per_job``; a payout
above the per-transaction cap is sent as sequential split chunks. Provider
callbacks (IPN) and delayed status jobs reconcile payments afterwards, always
under a per-payment lock.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Mapping, Optional, Sequence

from application.ports.jobs import PAYOUT_USERS, UPDATE_PAYOUT_STATUS, JobScheduler
from application.ports.notifications import AlertSink
from application.ports.payout_provider import NvpClient
from core.logging_config import get_logger
from core.settings import PaypalSettings, PayoutSettings
from domain.charging.entity import HolderOfFunds
from domain.common.exceptions import DomainValidationException
from domain.payout.entity import (
    NON_TERMINAL_STATES,
    Balance,
    Payment,
    PayoutRecipient,
    PayoutState,
    SplitPayment,
    SplitPaymentState,
    balance_state_for,
    is_valid_email,
)
from domain.payout.exceptions import PayoutReconciliationError, PayoutTransportError
from domain.payout.report import PayoutBatchReport, PayoutResult
from domain.payout.repository import PayoutPaymentRepository, PayoutRecipientRepository
from domain.payout.split import (
    SPLIT_PAYMENT_TXN_ID,
    SPLIT_PAYMENT_UNIQUE_ID_PREFIX,
    SplitOutcome,
    derive_split_outcome,
    parse_split_unique_id,
    split_amounts,
    split_unique_id,
)


logger = get_logger(__name__)

PAYOUT_PROCESSOR_TYPE = "paypal"
SUCCESS_ACKS = ("Success", "SuccessWithWarning")
_INDEXED_KEY = re.compile(r"^(.*)_(\d+)$")
_SYNCABLE_STATES = {"failed", "unclaimed", "completed", "cancelled", "reversed", "returned"}


@dataclass
class PaypalTransactionMatch:
    state: str
    transaction_id: Optional[str] = None
    correlation_id: Optional[str] = None
    paypal_fee: Optional[str] = None


def _iso8601(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _beginning_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _end_of_day(value: datetime) -> datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=999999)


def _fee_cents(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    return round(100 * float(value))


def _dollars(amount_cents: int) -> str:
    return str(amount_cents / 100)


class PaypalPayoutProcessor:
    def __init__(
        self,
        *,
        client: NvpClient,
        payments: PayoutPaymentRepository,
        recipients: PayoutRecipientRepository,
        scheduler: JobScheduler,
        alerts: AlertSink,
        paypal_settings: PaypalSettings,
        payout_settings: PayoutSettings,
    ) -> None:
        self.client = client
        self.payments = payments
        self.recipients = recipients
        self.scheduler = scheduler
        self.alerts = alerts
        self.paypal_settings = paypal_settings
        self.payout_settings = payout_settings

    # Request parameters

    def api_params(self) -> dict[str, str]:
        return {
            "USER": self.paypal_settings.nvp_user or "",
            "PWD": self.paypal_settings.nvp_password or "",
            "SIGNATURE": self.paypal_settings.nvp_signature or "",
            "VERSION": self.paypal_settings.nvp_version,
            "CURRENCYCODE": self.payout_settings.currency,
        }

    def auth_params(self) -> dict[str, str]:
        return {**self.api_params(), "METHOD": "MassPay", "RECEIVERTYPE": "EmailAddress"}

    @staticmethod
    def note_for_payment(recipient: PayoutRecipient) -> str:
        return f"{recipient.legal_entity_name}, selling digital products / memberships"

    @staticmethod
    def errors_for_response(response: Mapping[str, str]) -> list[str]:
        errors = []
        index = 0
        while response.get(f"L_SHORTMESSAGE{index}"):
            errors.append(
                f"{response.get(f'L_ERRORCODE{index}')} - "
                f"{response.get(f'L_SHORTMESSAGE{index}')} - "
                f"{response.get(f'L_LONGMESSAGE{index}')}"
            )
            index += 1
        return errors

    # Eligibility

    async def is_user_payable(
        self, recipient: PayoutRecipient, amount_payable_cents: int, add_comment: bool = False
    ) -> bool:
        """Checked per user before any network call; notes explain skipped payouts."""
        today = datetime.now(timezone.utc).date()
        payout_date = f"{today:%B} {today.day}, {today.year}"

        # Bank payouts take precedence over PayPal.
        if recipient.has_active_bank_account:
            return False

        if recipient.payable_via_stripe:
            return False

        email = recipient.paypal_payout_email
        if not is_valid_email(email):
            if add_comment:
                recipient.add_payout_note(
                    f"Payout via PayPal on {payout_date} skipped because the account does not have a valid PayPal payment address"
                )
            return False

        if not email.isascii():
            if add_comment:
                recipient.add_payout_note(
                    f"Payout via PayPal on {payout_date} skipped because the PayPal payment address contains invalid characters"
                )
            return False

        if not recipient.legal_entity_name and not recipient.has_paypal_account_connected:
            if add_comment:
                recipient.add_payout_note(
                    f"Payout via PayPal on {payout_date} skipped because the account does not have a valid name on record"
                )
            return False

        processing_ids = await self.payments.list_processing_ids_for_user(recipient.id)
        if processing_ids:
            if add_comment:
                ids = ", ".join(str(i) for i in processing_ids)
                recipient.add_payout_note(
                    f"Payout via PayPal on {payout_date} skipped because there are already payouts (ID {ids}) in processing"
                )
            return False

        return True

    @staticmethod
    def has_valid_payout_info(recipient: PayoutRecipient) -> bool:
        email = recipient.paypal_payout_email
        if not is_valid_email(email) or not email.isascii():
            return False
        return bool(recipient.legal_entity_name or recipient.has_paypal_account_connected)

    def is_balance_payable(self, balance: Balance) -> bool:
        """Only balances the platform holds in the payout currency go out through PayPal."""
        return (
            balance.holder_of_funds == HolderOfFunds.GUMROAD
            and balance.holding_currency.upper() == self.payout_settings.currency.upper()
        )

    def charges_payout_fee(self, recipient: PayoutRecipient) -> bool:
        if recipient.paypal_payout_fee_waived:
            return False
        return (recipient.country or "").upper() not in self.payout_settings.fee_exempt_countries

    def prepare_payment_and_set_amount(
        self, payment: Payment, recipient: PayoutRecipient, balances_cents: Iterable[int]
    ) -> None:
        payment.currency = self.payout_settings.currency
        payment.amount_cents = sum(balances_cents)
        if self.charges_payout_fee(recipient):
            payment.gumroad_fee_cents = math.ceil(payment.amount_cents * self.payout_settings.payout_fee_percent / 100)
            payment.amount_cents -= payment.gumroad_fee_cents

    def split_payment_by_cents(self, recipient: PayoutRecipient) -> int:
        cap = self.payout_settings.max_split_payment_cents
        cents = recipient.split_payment_by_cents
        if cents and cents <= cap:
            return cents
        return cap

    # Batching

    def enqueue_payments(self, user_ids: Sequence[int], date_string: str) -> list[Optional[str]]:
        size = self.payout_settings.recipients_per_job
        job_ids = []
        for index, start in enumerate(range(0, len(user_ids), size)):
            # Spaced out to stay under PayPal's undocumented rate limits.
            job_ids.append(
                self.scheduler.schedule(
                    PAYOUT_USERS,
                    kwargs={
                        "date_string": date_string,
                        "processor": PAYOUT_PROCESSOR_TYPE,
                        "user_ids": list(user_ids[start:start + size]),
                    },
                    delay_seconds=index * self.payout_settings.batch_spacing_seconds,
                )
            )
        logger.info("paypal_payouts_enqueued", users=len(user_ids), jobs=len(job_ids))
        return job_ids

    async def payout_users(self, date_string: str, user_ids: Sequence[int]) -> PayoutBatchReport:
        """Create a payment for every payable user with a balance up to ``date_string`` and send them."""
        payout_period_end_date = date.fromisoformat(date_string)
        payments = []
        for user_id in user_ids:
            recipient = await self.recipients.get_by_id(user_id)
            if recipient is None:
                logger.warning("paypal_payout_unknown_user", user_id=user_id)
                continue
            balances = [
                b for b in await self.recipients.unpaid_balances(user_id, payout_period_end_date)
                if self.is_balance_payable(b)
            ]
            amount = sum(b.amount_cents for b in balances)
            if amount <= 0:
                continue
            if not await self.is_user_payable(recipient, amount, add_comment=True):
                await self.recipients.update(recipient)
                continue
            payment = Payment(
                id=None,
                user_id=user_id,
                state=PayoutState.PROCESSING,
                payment_address=recipient.paypal_payout_email,
                payout_period_end_date=payout_period_end_date,
                created_at=datetime.now(timezone.utc),
            )
            self.prepare_payment_and_set_amount(payment, recipient, [b.amount_cents for b in balances])
            payment = await self.payments.create(payment)
            await self.recipients.attach_balances([b.id for b in balances], payment.id)
            payments.append(payment)
        return await self.process_payments(payments)

    async def process_payments(self, payments: Sequence[Payment]) -> PayoutBatchReport:
        report = PayoutBatchReport()
        regular: list[tuple[Payment, PayoutRecipient]] = []
        split_mode: list[tuple[Payment, PayoutRecipient]] = []

        for payment in payments:
            recipient = await self.recipients.get_by_id(payment.user_id)
            if recipient is None:
                report.add(PayoutResult(payment.id, payment.user_id, False, payment.state, errors=["Unknown user"]))
                continue
            if recipient.should_paypal_payout_be_split and payment.amount_cents > self.split_payment_by_cents(recipient):
                split_mode.append((payment, recipient))
            else:
                regular.append((payment, recipient))

        for payment, recipient in split_mode:
            try:
                report.add(await self.perform_split_payment(payment, recipient))
            except Exception as exc:
                logger.error(
                    "paypal_split_payout_error",
                    payment_id=payment.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    exc_info=True,
                )
                self.alerts.alert(f"Error processing payment {payment.id}: {exc}", payment_id=payment.id)
                report.add(PayoutResult(payment.id, payment.user_id, False, payment.state, split=True, errors=[str(exc)]))

        if regular:
            report.extend(await self.perform_payments(regular))
        logger.info(
            "paypal_payouts_processed",
            payments=len(report),
            succeeded=len(report.succeeded),
            failed=len(report.failed),
        )
        return report

    async def perform_payments(self, items: Sequence[tuple[Payment, PayoutRecipient]]) -> list[PayoutResult]:
        params = self.auth_params()
        user_ids = []
        for index, (payment, recipient) in enumerate(items):
            params[f"L_EMAIL{index}"] = payment.payment_address or recipient.paypal_payout_email or ""
            params[f"L_AMT{index}"] = _dollars(payment.amount_cents)
            params[f"L_UNIQUEID{index}"] = str(payment.id)
            params[f"L_NOTE{index}"] = self.note_for_payment(recipient)
            user_ids.append(payment.user_id)

        logger.info("paypal_masspay_request", user_ids=user_ids, recipients=len(items))
        try:
            response = await self.client.post(params)
        except PayoutTransportError as exc:
            # PayPal may or may not have accepted the batch; leave the payments for a status sync.
            self.alerts.alert(
                f"PayPal MassPay call failed for payments {[p.id for p, _ in items]}: {exc.message}",
                user_ids=user_ids,
            )
            return [
                PayoutResult(p.id, p.user_id, False, p.state, errors=[exc.message]) for p, _ in items
            ]

        ack = response.get("ACK")
        succeeded = ack in SUCCESS_ACKS
        correlation_id = response.get("CORRELATIONID")
        errors = self.errors_for_response(response) if ack != "Success" else []
        logger.info(
            "paypal_masspay_response",
            user_ids=user_ids,
            ack=ack,
            correlation_id=correlation_id,
            errors=errors or None,
        )

        results = []
        for payment, _ in items:
            payment.correlation_id = correlation_id
            if not succeeded and payment.can_transition_to(PayoutState.FAILED):
                payment.mark_failed()
            await self.payments.update(payment)
            await self._settle_balances(payment)
            results.append(
                PayoutResult(payment.id, payment.user_id, succeeded, payment.state, correlation_id, errors=list(errors))
            )
        return results

    async def perform_split_payment(self, payment: Payment, recipient: PayoutRecipient) -> PayoutResult:
        payment.was_created_in_split_mode = True
        errors: list[str] = []
        chunks = split_amounts(payment.amount_cents, self.split_payment_by_cents(recipient))

        for number, amount_cents in enumerate(chunks, start=1):
            params = self.auth_params()
            params["L_EMAIL0"] = payment.payment_address or recipient.paypal_payout_email or ""
            params["L_AMT0"] = _dollars(amount_cents)
            params["L_UNIQUEID0"] = split_unique_id(payment.id, number)
            params["L_NOTE0"] = self.note_for_payment(recipient)

            logger.info("paypal_split_payout_request", payment_id=payment.id, chunk=number, of=len(chunks))
            response = await self.client.post(params)

            ack = response.get("ACK")
            succeeded = ack in SUCCESS_ACKS
            correlation_id = response.get("CORRELATIONID")
            chunk_errors = self.errors_for_response(response) if ack != "Success" else []
            errors.extend(chunk_errors)
            payment.add_split_payment(
                SplitPayment(
                    state=SplitPaymentState.PROCESSING if succeeded else SplitPaymentState.FAILED,
                    amount_cents=amount_cents,
                    correlation_id=correlation_id,
                    errors=chunk_errors,
                )
            )
            payment.correlation_id = correlation_id
            await self.payments.update(payment)

            if not succeeded:
                logger.warning(
                    "paypal_split_payout_chunk_failed",
                    payment_id=payment.id,
                    chunk=number,
                    errors=chunk_errors,
                )
                # Only a failed first chunk stops the payout.
                if number == 1:
                    payment.mark_failed()
                    await self.payments.update(payment)
                    await self._settle_balances(payment)
                    break

        logger.info(
            "paypal_split_payout_attempted",
            payment_id=payment.id,
            user_id=payment.user_id,
            amount_cents=payment.amount_cents,
            chunks=len(payment.split_payments_info),
            errors=errors or None,
        )
        return PayoutResult(
            payment.id,
            payment.user_id,
            payment.state != PayoutState.FAILED,
            payment.state,
            payment.correlation_id,
            split=True,
            errors=errors,
        )

    # Reconciliation

    async def handle_paypal_event(self, paypal_event: Mapping[str, str]) -> None:
        """Route every ``*_<n>`` group of an IPN to its payment or split chunk."""
        logger.info("paypal_payout_ipn_received", keys=len(paypal_event))
        grouped: dict[int, dict[str, str]] = {}
        for key, value in paypal_event.items():
            match = _INDEXED_KEY.match(key)
            if not match:
                continue
            grouped.setdefault(int(match.group(2)), {})[match.group(1)] = value

        for index in sorted(grouped):
            information = grouped[index]
            unique_id = str(information.get("unique_id") or "")
            if unique_id.startswith(SPLIT_PAYMENT_UNIQUE_ID_PREFIX):
                await self._handle_split_payment_event(unique_id, information)
            else:
                await self._handle_non_split_payment_event(unique_id, information)

    async def _handle_non_split_payment_event(self, unique_id: str, information: Mapping[str, str]) -> None:
        payment = await self._find_payment(unique_id)
        if payment is None or payment.state not in NON_TERMINAL_STATES:
            return

        async with self.payments.locked(payment.id) as payment:
            if payment is None or payment.state not in NON_TERMINAL_STATES:
                return
            payment.txn_id = information.get("masspay_txn_id")
            fee = _fee_cents(information.get("mc_fee"))
            if fee is not None:
                payment.processor_fee_cents = fee

            new_state = (information.get("status") or "").lower()
            # PayPal sometimes reports Pending for payouts that are already
            # Unclaimed or Completed; confirm through a transaction search.
            if new_state == "pending":
                new_state = await self.get_latest_payment_state_from_paypal(
                    payment.amount_cents,
                    payment.txn_id,
                    _beginning_of_day(payment.created_at or datetime.now(timezone.utc)) - timedelta(days=1),
                    new_state,
                )

            if new_state == "pending":
                self._schedule_status_update(payment)
            elif new_state and new_state != payment.state.value:
                failure_reason = None
                if new_state == "failed" and information.get("reason_code"):
                    failure_reason = f"PAYPAL {information['reason_code']}"
                if self._apply_state(payment, new_state, failure_reason):
                    await self._settle_balances(payment)

    async def _handle_split_payment_event(self, unique_id: str, information: Mapping[str, str]) -> None:
        try:
            payment_id, number = parse_split_unique_id(unique_id)
        except DomainValidationException:
            logger.warning("paypal_payout_ipn_bad_unique_id", unique_id=unique_id)
            return
        if await self.payments.get_by_id(payment_id) is None:
            logger.warning("paypal_payout_ipn_unknown_payment", unique_id=unique_id)
            return

        async with self.payments.locked(payment_id) as payment:
            if payment is None or not 1 <= number <= len(payment.split_payments_info):
                logger.warning("paypal_payout_ipn_unknown_chunk", unique_id=unique_id)
                return
            chunk = payment.split_payments_info[number - 1]
            if not chunk.state.in_flight:
                return

            status = (information.get("status") or "").lower()
            try:
                new_state = SplitPaymentState(status)
            except ValueError:
                logger.warning("paypal_payout_ipn_unknown_status", unique_id=unique_id, status=status)
                return
            chunk.txn_id = information.get("masspay_txn_id")
            chunk.state = new_state
            fee = _fee_cents(information.get("mc_fee"))
            if fee is not None:
                payment.add_processor_fee(fee)

            if chunk.state == SplitPaymentState.PENDING:
                self._schedule_status_update(payment)

            await self.update_split_payment_state(payment)
            await self._settle_balances(payment)

    async def _find_payment(self, unique_id: str) -> Optional[Payment]:
        payment = None
        if unique_id.isdigit():
            payment = await self.payments.get_by_id(int(unique_id))
        if payment is None:
            logger.warning("paypal_payout_ipn_unknown_payment", unique_id=unique_id)
        return payment

    async def update_split_payment_state(self, payment: Payment) -> SplitOutcome:
        outcome = derive_split_outcome(chunk.state for chunk in payment.split_payments_info)
        if outcome == SplitOutcome.COMPLETED:
            if payment.can_transition_to(PayoutState.COMPLETED):
                payment.txn_id = SPLIT_PAYMENT_TXN_ID
                payment.mark_completed()
        elif outcome == SplitOutcome.FAILED:
            if payment.can_transition_to(PayoutState.FAILED):
                payment.mark_failed()
        elif outcome == SplitOutcome.UNDETERMINED:
            self.alerts.alert(
                f"Payment id {payment.id} was split and some of the split payments failed and some succeeded",
                payment_id=payment.id,
                states=[chunk.state.value for chunk in payment.split_payments_info],
            )
        return outcome

    async def _settle_balances(self, payment: Payment) -> None:
        """Balances follow their payout: paid once completed, unpaid again once it failed or came back."""
        await self.recipients.settle_balances(payment.id, balance_state_for(payment.state))

    def _schedule_status_update(self, payment: Payment) -> None:
        self.scheduler.schedule(
            UPDATE_PAYOUT_STATUS,
            kwargs={"payment_id": payment.id},
            delay_seconds=self.payout_settings.pending_recheck_delay_seconds,
        )
        logger.info("paypal_payout_status_recheck_scheduled", payment_id=payment.id)

    def _apply_state(self, payment: Payment, new_state: str, failure_reason: Optional[str] = None) -> bool:
        try:
            target = PayoutState(new_state)
        except ValueError:
            logger.warning("paypal_payout_unknown_state", payment_id=payment.id, state=new_state)
            return False
        if not payment.can_transition_to(target):
            logger.warning(
                "paypal_payout_transition_rejected",
                payment_id=payment.id,
                current=payment.state.value,
                target=target.value,
            )
            return False
        if target == PayoutState.FAILED:
            payment.mark_failed(failure_reason)
        else:
            payment.mark(target)
        logger.info("paypal_payout_transitioned", payment_id=payment.id, state=payment.state.value)
        return True

    async def get_latest_payment_state_from_paypal(
        self,
        amount_cents: int,
        transaction_id: Optional[str],
        start_date: datetime,
        current_state: str,
    ) -> str:
        params = {
            **self.api_params(),
            "METHOD": "TransactionSearch",
            "TRANSACTIONCLASS": "Sent",
            "AMT": f"{amount_cents / 100:.2f}",
            "TRANSACTIONID": transaction_id or "",
            "STARTDATE": _iso8601(start_date),
        }
        try:
            response = await self.client.post(params)
        except PayoutTransportError as exc:
            logger.warning("paypal_transaction_search_failed", transaction_id=transaction_id, error=exc.message)
            return current_state

        # Only a single result with complete data and a settled status is trusted.
        if (
            not response.get("L_STATUS0")
            or not response.get("L_AMT0")
            or not response.get("L_TRANSACTIONID0")
            or not response.get("L_FEEAMT0")
            or response.get("L_TIMESTAMP1")
            or response["L_STATUS0"].lower() not in ("unclaimed", "completed")
        ):
            return current_state
        return response["L_STATUS0"].lower()

    async def search_payment_on_paypal(
        self,
        amount_cents: int,
        start_date: datetime,
        transaction_id: Optional[str] = None,
        payment_address: Optional[str] = None,
        end_date: Optional[datetime] = None,
    ) -> Optional[PaypalTransactionMatch]:
        if not transaction_id and not payment_address:
            return None

        amount = f"{amount_cents / 100:.2f}"
        params = {**self.api_params(), "METHOD": "TransactionSearch", "TRANSACTIONCLASS": "Sent"}
        if transaction_id:
            params.update({"TRANSACTIONID": transaction_id, "STARTDATE": _iso8601(start_date)})
        else:
            params.update({
                "AMT": amount,
                "EMAIL": payment_address,
                "STARTDATE": _iso8601(start_date),
                "ENDDATE": _iso8601(end_date or _end_of_day(start_date)),
            })
        response = await self.client.post(params)

        def match(index: int, state: Optional[str] = None) -> PaypalTransactionMatch:
            return PaypalTransactionMatch(
                state=state or response[f"L_STATUS{index}"].lower(),
                transaction_id=response.get(f"L_TRANSACTIONID{index}"),
                correlation_id=response.get("CORRELATIONID"),
                paypal_fee=response.get(f"L_FEEAMT{index}"),
            )

        status0, status1 = response.get("L_STATUS0"), response.get("L_STATUS1")
        if (
            status0 and status1 and not response.get("L_STATUS2")
            and transaction_id in (response.get("L_TRANSACTIONID0"), response.get("L_TRANSACTIONID1"))
            and {response.get("L_AMT0"), response.get("L_AMT1")} == {amount, f"-{amount}"}
        ):
            # A reversed / returned / cancelled payout is listed next to the original transaction.
            pair = {status0.lower(), status1.lower()}
            if pair == {"completed", "reversed"}:
                return match(0, PayoutState.REVERSED.value)
            if pair == {"completed", "canceled"}:
                return match(0, PayoutState.CANCELLED.value)
            if pair == {"completed", "returned"}:
                return match(0, PayoutState.RETURNED.value)
            raise PayoutReconciliationError(
                f"Multiple PayPal transactions found for {payment_address} with amount {amount}"
            )
        if status0 and status1:
            raise PayoutReconciliationError(
                f"Multiple PayPal transactions found for {payment_address} with amount {amount}"
            )
        if status0:
            return match(0)
        if not transaction_id:
            # Searched by address only: the payout may never have reached PayPal.
            return None
        raise PayoutReconciliationError(
            f"No PayPal transaction found for transaction ID {transaction_id} and amount {amount}"
        )

    async def sync_with_paypal(self, payment_id: int) -> None:
        """Delayed status check for payments PayPal has not settled yet."""
        async with self.payments.locked(payment_id) as payment:
            if payment is None or payment.state not in NON_TERMINAL_STATES:
                return
            created_at = payment.created_at or datetime.now(timezone.utc)
            start_date = _beginning_of_day(created_at) - timedelta(days=1)

            if payment.was_created_in_split_mode:
                # Split parts are only looked up by their own transaction ids.
                for chunk in payment.split_payments_info:
                    latest = await self.get_latest_payment_state_from_paypal(
                        chunk.amount_cents, chunk.txn_id, start_date, chunk.state.value
                    )
                    chunk.state = SplitPaymentState(latest)
                if len({chunk.state for chunk in payment.split_payments_info}) > 1:
                    self.alerts.alert(
                        f"Not all split payout parts are in the same state for payout {payment.id}. "
                        "This needs to be handled manually.",
                        payment_id=payment.id,
                    )
                    return
                await self.update_split_payment_state(payment)
                await self._settle_balances(payment)
                return

            try:
                found = await self.search_payment_on_paypal(
                    payment.amount_cents,
                    start_date,
                    transaction_id=payment.txn_id,
                    payment_address=payment.payment_address,
                    end_date=_end_of_day(created_at) + timedelta(days=1),
                )
            except PayoutReconciliationError as exc:
                self.alerts.alert(f"Error syncing PayPal payout {payment.id}: {exc.message}", payment_id=payment.id)
                return

            if found is None:
                self._transition_to_new_state(payment, PayoutState.FAILED.value)
            else:
                self._transition_to_new_state(
                    payment,
                    found.state,
                    transaction_id=found.transaction_id,
                    correlation_id=found.correlation_id,
                    paypal_fee=found.paypal_fee,
                )
            await self._settle_balances(payment)

    def _transition_to_new_state(
        self,
        payment: Payment,
        new_state: Optional[str],
        *,
        transaction_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        paypal_fee: Optional[str] = None,
    ) -> None:
        if not new_state or new_state == payment.state.value or new_state not in _SYNCABLE_STATES:
            return
        if transaction_id and not payment.txn_id:
            payment.txn_id = transaction_id
        if correlation_id and not payment.correlation_id:
            payment.correlation_id = correlation_id
        if paypal_fee and payment.processor_fee_cents is None:
            payment.processor_fee_cents = abs(_fee_cents(paypal_fee))

        # A payout stuck in creating moves through processing first.
        if payment.state == PayoutState.CREATING:
            payment.mark_processing()

        if new_state == PayoutState.FAILED.value and not transaction_id:
            self._apply_state(payment, new_state, "Transaction not found")
        else:
            self._apply_state(payment, new_state)

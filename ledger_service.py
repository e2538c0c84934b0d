#!/usr/bin/env python3
# Sales ledger: form validation + per-day S.no + totals + spreadsheet endpoint sync
import os, sys, json, argparse, logging, datetime as dt
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests
from dotenv import load_dotenv

log = logging.getLogger(__name__)

load_dotenv()

ENDPOINT_URL = os.environ.get("LEDGER_ENDPOINT_URL") or None   # Apps Script web app URL
try:
    REQUEST_TIMEOUT = float(os.environ.get("LEDGER_TIMEOUT", "15"))
except ValueError:
    REQUEST_TIMEOUT = 15.0

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
MAX_SALE_AMOUNT = Decimal("1000000000")

STATUS_IDLE = "idle"
STATUS_LOADING = "loading"


class PaymentType(str, Enum):
    CASH = "Cash"
    UPI = "UPI"

    @classmethod
    def parse(cls, value: Any) -> "PaymentType":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise ValueError(f"Unknown payment type: {value!r}")


class LedgerRemoteError(Exception):
    """Raised when the remote ledger endpoint is unreachable or reports a failure."""


# ---------- AMOUNTS ----------

def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a form/remote amount into a 2-decimal Decimal; None if it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        amount = Decimal(text)
        if not amount.is_finite():
            return None
        # quantize raises InvalidOperation past the context precision (28 digits)
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def format_amount(value: Any) -> str:
    if isinstance(value, Decimal) and value.is_finite():
        amount = value
    else:
        amount = parse_amount(value)
    return f"{(amount if amount is not None else ZERO):.2f}"


def _to_int(value: Any, default: int = 0) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        pass
    try:
        number = Decimal(str(value).strip())
        if not number.is_finite() or number.adjusted() > 18:
            return default
        return int(number)
    except (InvalidOperation, ValueError):
        return default


def _date_part(value: Any) -> Optional[str]:
    """Spreadsheet dates arrive as 'YYYY-MM-DD' or full ISO timestamps; keep the day only."""
    if not value:
        return None
    text = str(value).strip()
    if len(text) < 10:
        return None
    day = text[:10]
    try:
        dt.date.fromisoformat(day)
    except ValueError:
        return None
    return day


# ---------- MODEL ----------

@dataclass(frozen=True)
class SaleEntry:
    sequence_number: int
    date: str
    patient_name: str
    sale_amount: Decimal
    payment_type: PaymentType = PaymentType.CASH
    cash_memo_bill: str = ""
    phone_number: str = ""

    @property
    def display_amount(self) -> str:
        return format_amount(self.sale_amount)

    def to_payload(self) -> Dict[str, Any]:
        """Body of the remote POST."""
        return {
            "sNo": self.sequence_number,
            "date": self.date,
            "patientName": self.patient_name,
            "cashMemoBill": self.cash_memo_bill,
            "saleAmount": float(self.sale_amount),
            "paymentType": self.payment_type.value,
            "phoneNumber": self.phone_number,
        }

    def as_row(self) -> Dict[str, Any]:
        row = self.to_payload()
        row["saleAmount"] = self.display_amount
        return row

    @classmethod
    def from_remote(cls, row: Dict[str, Any]) -> "SaleEntry":
        try:
            payment = PaymentType.parse(row.get("paymentType") or PaymentType.CASH.value)
        except ValueError:
            log.warning("Remote entry %s has unknown payment type %r; counting as Cash",
                        row.get("sNo"), row.get("paymentType"))
            payment = PaymentType.CASH
        return cls(
            sequence_number=_to_int(row.get("sNo")),
            date=_date_part(row.get("date")) or str(row.get("date") or ""),
            patient_name=str(row.get("patientName") or ""),
            sale_amount=parse_amount(row.get("saleAmount")) or ZERO,
            payment_type=payment,
            cash_memo_bill=str(row.get("cashMemoBill") or ""),
            phone_number=str(row.get("phoneNumber") or ""),
        )


@dataclass(frozen=True)
class DailyTotals:
    cash_total: Decimal = ZERO
    upi_total: Decimal = ZERO
    grand_total: Decimal = ZERO

    def as_display(self) -> Dict[str, str]:
        return {
            "cash": format_amount(self.cash_total),
            "upi": format_amount(self.upi_total),
            "grand": format_amount(self.grand_total),
        }


@dataclass(frozen=True)
class LedgerForm:
    """Raw form text, exactly as typed."""
    sequence_number: str = "1"
    date: str = ""
    patient_name: str = ""
    cash_memo_bill: str = ""
    sale_amount: str = ""
    payment_type: str = PaymentType.CASH.value
    phone_number: str = ""


@dataclass(frozen=True)
class LedgerState:
    form: LedgerForm = field(default_factory=LedgerForm)
    entries: Tuple[SaleEntry, ...] = ()
    totals: DailyTotals = field(default_factory=DailyTotals)
    status: str = STATUS_IDLE
    message: Optional[str] = None
    message_kind: Optional[str] = None
    synced: bool = False

    @property
    def next_sequence_number(self) -> int:
        return _to_int(self.form.sequence_number, 1)

    def to_json(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "sNo": self.next_sequence_number,
            "date": self.form.date,
            "totals": self.totals.as_display(),
            "entries": [e.as_row() for e in self.entries],
            "message": self.message,
            "messageKind": self.message_kind,
            "synced": self.synced,
        }


def compute_totals(entries: Iterable[SaleEntry]) -> DailyTotals:
    cash = ZERO
    upi = ZERO
    for entry in entries:
        if entry.payment_type is PaymentType.UPI:
            upi += entry.sale_amount
        else:
            cash += entry.sale_amount
    return DailyTotals(cash_total=cash, upi_total=upi, grand_total=cash + upi)


def next_sequence_number(last_sno: Any, last_date: Optional[str], today: str) -> int:
    """S.no continues from the remote's last row only when that row is from today."""
    if last_date and _date_part(last_date) == today:
        return max(_to_int(last_sno), 0) + 1
    return 1


# ---------- VALIDATION ----------

def validate_form(form: LedgerForm) -> Optional[str]:
    """Return a user-facing message for the first invalid field, or None."""
    if not (form.patient_name or "").strip():
        return "Please fill in Patient Name."
    amount = parse_amount(form.sale_amount)
    if amount is None:
        return "Please enter a valid Sale Amount."
    if abs(amount) > MAX_SALE_AMOUNT:
        return "Sale Amount is too large."
    if not form.date or _date_part(form.date) != form.date.strip():
        return "Please choose a valid Date (YYYY-MM-DD)."
    try:
        PaymentType.parse(form.payment_type)
    except ValueError:
        return "Payment Type must be Cash or UPI."
    return None


def build_entry(form: LedgerForm) -> SaleEntry:
    """Materialize a SaleEntry from a form that already passed validate_form."""
    return SaleEntry(
        sequence_number=_to_int(form.sequence_number, 1),
        date=form.date.strip(),
        patient_name=form.patient_name.strip(),
        sale_amount=parse_amount(form.sale_amount),
        payment_type=PaymentType.parse(form.payment_type),
        cash_memo_bill=(form.cash_memo_bill or "").strip(),
        phone_number=(form.phone_number or "").strip(),
    )


# ---------- STATE TRANSITIONS ----------

def today_iso(clock: Callable[[], dt.date] = dt.date.today) -> str:
    return clock().isoformat()


def initial_state(today: str) -> LedgerState:
    return LedgerState(form=LedgerForm(sequence_number="1", date=today))


def begin_operation(state: LedgerState) -> LedgerState:
    return replace(state, status=STATUS_LOADING, message=None, message_kind=None)


def finish(state: LedgerState) -> LedgerState:
    return replace(state, status=STATUS_IDLE)


def with_message(state: LedgerState, text: Optional[str], kind: Optional[str] = "error") -> LedgerState:
    return replace(state, message=text, message_kind=kind if text else None)


def with_form(state: LedgerState, **fields: Any) -> LedgerState:
    return replace(state, form=replace(state.form, **fields))


def apply_remote_ledger(state: LedgerState, remote: Dict[str, Any], today: str) -> LedgerState:
    """Replace local entries/totals with the remote ledger; optimistic rows are dropped."""
    last_date = remote.get("lastDate") or remote.get("currentDate")
    sno = next_sequence_number(remote.get("lastSNo"), last_date, today)
    rows = remote.get("todayEntries") or []
    entries = tuple(SaleEntry.from_remote(r) for r in rows if isinstance(r, dict))
    totals = DailyTotals(
        cash_total=parse_amount(remote.get("cashTotal")) or ZERO,
        upi_total=parse_amount(remote.get("upiTotal")) or ZERO,
        grand_total=parse_amount(remote.get("grandTotal")) or ZERO,
    )
    return replace(
        state,
        form=replace(state.form, sequence_number=str(sno), date=today),
        entries=entries,
        totals=totals,
        status=STATUS_IDLE,
        synced=True,
    )


def apply_fetch_failure(state: LedgerState, today: str) -> LedgerState:
    """Degrade to a purely local session; the form stays usable."""
    fresh = initial_state(today)
    return replace(
        fresh,
        form=replace(
            state.form,
            sequence_number=fresh.form.sequence_number,
            date=fresh.form.date,
        ),
        message=state.message,
        message_kind=state.message_kind,
    )


def apply_local_entry(state: LedgerState, entry: SaleEntry) -> LedgerState:
    """Optimistic append: entry shown immediately, S.no advanced, editable fields cleared."""
    entries = state.entries + (entry,)
    form = LedgerForm(
        sequence_number=str(entry.sequence_number + 1),
        date=state.form.date,
        payment_type=PaymentType.CASH.value,
    )
    return replace(state, form=form, entries=entries, totals=compute_totals(entries))


# ---------- REMOTE ENDPOINT ----------

def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
        return j.get("message") or j.get("error") or resp.text
    except Exception:
        return resp.text


class LedgerEndpoint:
    """Spreadsheet-backed ledger behind a single URL: GET reads, POST appends."""

    def __init__(self, url: str, timeout: float = REQUEST_TIMEOUT, session: Optional[requests.Session] = None):
        if not url:
            raise ValueError("Ledger endpoint URL is required")
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _json(self, resp: requests.Response) -> Dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            raise LedgerRemoteError(f"Unreadable response from ledger endpoint: {resp.text[:200]}")
        if not isinstance(body, dict):
            raise LedgerRemoteError("Unexpected response shape from ledger endpoint")
        return body

    def fetch(self) -> Dict[str, Any]:
        try:
            resp = self.session.get(self.url, headers={"Accept": "application/json"}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise LedgerRemoteError(f"Could not reach ledger endpoint: {exc}") from exc
        if resp.status_code >= 400:
            raise LedgerRemoteError(_error_message_from_response(resp) or f"HTTP {resp.status_code}")
        body = self._json(resp)
        if body.get("error"):
            raise LedgerRemoteError(str(body["error"]))
        return body

    def submit(self, entry: SaleEntry) -> Dict[str, Any]:
        payload = entry.to_payload()
        try:
            resp = self.session.post(
                self.url,
                data=json.dumps(payload),
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise LedgerRemoteError(f"Could not reach ledger endpoint: {exc}") from exc
        if resp.status_code >= 400:
            raise LedgerRemoteError(_error_message_from_response(resp) or f"HTTP {resp.status_code}")
        body = self._json(resp)
        if body.get("status") != "success":
            raise LedgerRemoteError(str(body.get("message") or body.get("error") or resp.text or "Unknown error"))
        return body


# ---------- CLI ----------

def _print_ledger(state: LedgerState, out=None):
    out = out or sys.stdout
    totals = state.totals.as_display()
    print(f"Next S.no: {state.next_sequence_number}  Date: {state.form.date}", file=out)
    for e in state.entries:
        print(f"{e.sequence_number:>4}  {e.date}  {e.patient_name:<24} {e.payment_type.value:<4} {e.display_amount:>10}",
              file=out)
    print(f"Cash: {totals['cash']}  UPI: {totals['upi']}  Total: {totals['grand']}", file=out)


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Dispensary daily sales ledger")
    ap.add_argument("--endpoint", default=ENDPOINT_URL, help="Ledger endpoint URL (LEDGER_ENDPOINT_URL)")
    ap.add_argument("--timeout", type=float, default=REQUEST_TIMEOUT, help="Request timeout in seconds")
    ap.add_argument("--show", action="store_true", help="Print today's entries and totals")
    ap.add_argument("--add", action="store_true", help="Record one sale")
    ap.add_argument("--name", default="", help="Patient name")
    ap.add_argument("--amount", default="", help="Sale amount")
    ap.add_argument("--payment", default=PaymentType.CASH.value, help="Cash or UPI")
    ap.add_argument("--bill", default="", help="Cash memo / bill number")
    ap.add_argument("--phone", default="", help="Phone number")
    ap.add_argument("--date", default=None, help="Sale date YYYY-MM-DD (default today)")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="[ledger] %(asctime)s %(levelname)s %(message)s")
    if not args.endpoint:
        print("No ledger endpoint configured (set LEDGER_ENDPOINT_URL or pass --endpoint)", file=sys.stderr)
        return 1

    endpoint = LedgerEndpoint(args.endpoint, timeout=args.timeout)
    today = today_iso()
    state = initial_state(today)
    try:
        state = apply_remote_ledger(state, endpoint.fetch(), today)
    except LedgerRemoteError as exc:
        log.warning("Ledger fetch failed, continuing with a local S.no: %s", exc)
        state = apply_fetch_failure(state, today)

    if args.add:
        state = with_form(
            state,
            patient_name=args.name,
            sale_amount=args.amount,
            payment_type=args.payment,
            cash_memo_bill=args.bill,
            phone_number=args.phone,
            date=args.date or state.form.date,
        )
        error = validate_form(state.form)
        if error:
            print(error, file=sys.stderr)
            return 1
        entry = build_entry(state.form)
        try:
            endpoint.submit(entry)
            state = apply_remote_ledger(state, endpoint.fetch(), today)
        except LedgerRemoteError as exc:
            print(f"Failed to record sale: {exc}", file=sys.stderr)
            return 1
        print(f"Recorded S.no {entry.sequence_number} for {entry.patient_name} ({entry.display_amount})")

    if args.show or args.add:
        _print_ledger(state)
    return 0


if __name__ == "__main__":
    sys.exit(main())

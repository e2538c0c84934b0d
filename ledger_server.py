from flask import Flask, render_template, request, jsonify
from dotenv import load_dotenv
import os
import threading
import logging
import datetime as dt
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

import ledger_service as ls

# Load environment variables
load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


app = Flask(__name__)
app.config['SEND_FILE_MAX_AGE_DEFAULT'] = 0

_LOG_LEVEL_NAME = (os.getenv('LEDGER_LOG_LEVEL') or 'INFO').strip().upper()
app.logger.setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))
logging.getLogger('werkzeug').setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))

LEDGER_ENDPOINT_URL = _env_string('LEDGER_ENDPOINT_URL')
try:
    LEDGER_TIMEOUT = float(_env_string('LEDGER_TIMEOUT', '15'))
except ValueError:
    LEDGER_TIMEOUT = 15.0
LEDGER_TITLE = _env_string('LEDGER_TITLE', 'Dr Rajeev Kumar Garg - Dispensary')
LEDGER_CURRENCY = _env_string('LEDGER_CURRENCY', '₹')

BUSY_MESSAGE = 'A sale is already being submitted. Please wait.'


class LedgerController:
    """Owns the current LedgerState snapshot; every operation swaps in a new one."""

    def __init__(self, endpoint: Optional[ls.LedgerEndpoint] = None,
                 today: Callable[[], dt.date] = dt.date.today):
        self.endpoint = endpoint
        self._today = today
        self._lock = threading.Lock()
        self._in_flight = False
        self._loaded = False
        self._day = self._today_iso()
        self._state = ls.initial_state(self._day)

    def _today_iso(self) -> str:
        return ls.today_iso(self._today)

    @property
    def state(self) -> ls.LedgerState:
        with self._lock:
            return self._state

    def _set(self, state: ls.LedgerState) -> ls.LedgerState:
        with self._lock:
            self._state = state
        return state

    def _acquire(self) -> bool:
        with self._lock:
            if self._in_flight:
                return False
            self._in_flight = True
            self._state = ls.begin_operation(self._state)
            return True

    def _release(self) -> None:
        with self._lock:
            self._in_flight = False
            self._state = ls.finish(self._state)

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._in_flight

    def _reconcile(self, state: ls.LedgerState) -> ls.LedgerState:
        """Reconciliation fetch; raises LedgerRemoteError when the endpoint fails."""
        remote = self.endpoint.fetch()
        return ls.apply_remote_ledger(state, remote, self._today_iso())

    def _roll_day(self) -> Optional[str]:
        """Start a fresh ledger day when the clock has passed midnight.
        Returns the previous day when a rollover happened."""
        today = self._today_iso()
        previous = self._day
        if today == previous:
            return None
        app.logger.info('Ledger day changed from %s to %s; starting S.no over', previous, today)
        self._day = today
        self._loaded = False
        self._set(replace(ls.initial_state(today), status=self.state.status))
        return previous

    def load(self) -> ls.LedgerState:
        """Reconciliation fetch. The first failed load of a day degrades to a local
        session; later failures keep whatever the session already shows."""
        if not self._acquire():
            return ls.with_message(self.state, BUSY_MESSAGE)
        try:
            self._roll_day()
            self._load()
        finally:
            self._release()
        return self.state

    def current(self) -> ls.LedgerState:
        """Snapshot for read-only views; reloads first when the day has changed."""
        if self._today_iso() != self._day:
            return self.load()
        return self.state

    def _load(self) -> None:
        state = self.state
        first = not self._loaded
        self._loaded = True
        if self.endpoint is None:
            if first:
                self._set(ls.apply_fetch_failure(state, self._today_iso()))
            return
        try:
            self._set(self._reconcile(state))
        except ls.LedgerRemoteError as exc:
            app.logger.warning('Ledger fetch failed; continuing with local state: %s', exc)
            if first:
                self._set(ls.apply_fetch_failure(state, self._today_iso()))

    def submit(self, fields: Dict[str, Any]) -> Tuple[ls.LedgerState, str]:
        """Record one sale. Returns (state, outcome) with outcome in
        'success', 'invalid', 'busy' or 'remote_error'."""
        if not self._acquire():
            return ls.with_message(self.state, BUSY_MESSAGE), 'busy'
        try:
            outcome = self._submit(fields)
        finally:
            self._release()
        return self.state, outcome

    def _submit(self, fields: Dict[str, Any]) -> str:
        previous_day = self._roll_day()
        if previous_day:
            self._load()
        state = self.state
        form = _form_from_fields(state.form, fields)
        if previous_day and form.date.strip() == previous_day:
            # page was rendered before midnight; the sale belongs to the new day
            form = replace(form, date=self._day)
        error = ls.validate_form(form)
        if error:
            self._set(ls.with_message(replace(state, form=form), error))
            return 'invalid'

        # optimistic append; replaced wholesale by the next reconciliation
        entry = ls.build_entry(form)
        state = self._set(ls.apply_local_entry(replace(state, form=form), entry))

        if self.endpoint is None:
            app.logger.info('Recorded S.no %s locally (no endpoint configured)', entry.sequence_number)
            self._set(ls.with_message(state, 'Sale added locally (not synced).', 'success'))
            return 'success'

        try:
            self.endpoint.submit(entry)
        except ls.LedgerRemoteError as exc:
            app.logger.warning('Submitting S.no %s failed: %s', entry.sequence_number, exc)
            self._set(ls.with_message(state, f'Failed to save sale: {exc}'))
            return 'remote_error'

        try:
            state = self._reconcile(state)
        except ls.LedgerRemoteError as exc:
            app.logger.warning('Reconciliation after S.no %s failed: %s', entry.sequence_number, exc)
        self._set(ls.with_message(state, 'Sale saved.', 'success'))
        return 'success'


_FORM_KEYS = {
    'sequence_number': ('sNo',),
    'date': ('date',),
    'patient_name': ('patientName',),
    'cash_memo_bill': ('cashMemoBill', 'cashMemoOrBill'),
    'sale_amount': ('saleAmount',),
    'payment_type': ('paymentType',),
    'phone_number': ('phoneNumber',),
}


def _form_from_fields(current: ls.LedgerForm, fields: Dict[str, Any]) -> ls.LedgerForm:
    """Overlay submitted fields on the current form; the S.no always comes from the session."""
    values = {}
    for attr, keys in _FORM_KEYS.items():
        if attr == 'sequence_number':
            continue
        for key in keys:
            if key in fields and fields[key] is not None:
                values[attr] = str(fields[key])
                break
    return replace(current, **values)


_CONTROLLER: Optional[LedgerController] = None
_CONTROLLER_LOCK = threading.Lock()


def get_controller() -> LedgerController:
    """Create the controller once per process and run the startup reconciliation fetch."""
    global _CONTROLLER
    with _CONTROLLER_LOCK:
        if _CONTROLLER is None:
            endpoint = ls.LedgerEndpoint(LEDGER_ENDPOINT_URL, timeout=LEDGER_TIMEOUT) if LEDGER_ENDPOINT_URL else None
            if endpoint is None:
                app.logger.info('LEDGER_ENDPOINT_URL not set; entries stay in this session only')
            controller = LedgerController(endpoint)
            controller.load()
            _CONTROLLER = controller
        return _CONTROLLER


def set_controller(controller: Optional[LedgerController]) -> None:
    global _CONTROLLER
    with _CONTROLLER_LOCK:
        _CONTROLLER = controller


_OUTCOME_STATUS = {
    'success': 200,
    'invalid': 400,
    'busy': 409,
    'remote_error': 502,
}


@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    if 'Expires' in response.headers:
        del response.headers['Expires']
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


def _render(state: ls.LedgerState, status: int = 200):
    return render_template(
        'ledger.html',
        title=LEDGER_TITLE,
        currency=LEDGER_CURRENCY,
        state=state,
        form=state.form,
        totals=state.totals.as_display(),
        payment_types=[p.value for p in ls.PaymentType],
    ), status


@app.route('/')
def index():
    """Reload from the sheet, then render the sale form, totals and today's entries"""
    return _render(get_controller().load())


@app.route('/submit', methods=['POST'])
def submit_form():
    state, outcome = get_controller().submit(request.form.to_dict())
    return _render(state, _OUTCOME_STATUS.get(outcome, 200))


@app.route('/refresh', methods=['POST'])
def refresh_form():
    return _render(get_controller().load())


@app.route('/api/ledger')
def api_ledger():
    """Current ledger snapshot: next S.no, totals and today's entries"""
    return jsonify(get_controller().current().to_json())


@app.route('/api/refresh', methods=['POST'])
def api_refresh():
    state = get_controller().load()
    return jsonify({'status': 'success', 'ledger': state.to_json()})


@app.route('/api/entries', methods=['POST'])
def api_create_entry():
    """Record a sale from a JSON body shaped like the remote POST"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'status': 'error', 'message': 'Invalid JSON payload'}), 400
    state, outcome = get_controller().submit(data)
    body = {
        'status': 'success' if outcome == 'success' else 'error',
        'message': state.message,
        'ledger': state.to_json(),
    }
    return jsonify(body), _OUTCOME_STATUS.get(outcome, 200)


if __name__ == '__main__':
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    app.run(host=host, port=port, debug=debug)

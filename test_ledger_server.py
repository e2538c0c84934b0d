import datetime as dt
import unittest

import ledger_service as ls
import ledger_server as srv

TODAY = dt.date(2024, 1, 2)


class FakeSheet:
    """In-memory stand-in for the spreadsheet endpoint."""

    def __init__(self, last_sno=0, last_date=None, fail_fetch=False, submit_error=None, today=lambda: TODAY):
        self.rows = []
        self.last_sno = last_sno
        self.last_date = last_date
        self.fail_fetch = fail_fetch
        self.submit_error = submit_error
        self.fetches = 0
        self.submitted = []
        self.on_submit = None
        self.today = today

    def fetch(self):
        self.fetches += 1
        if self.fail_fetch:
            raise ls.LedgerRemoteError("offline")
        rows = [r for r in self.rows if r["date"] == self.today().isoformat()]
        totals = ls.compute_totals(ls.SaleEntry.from_remote(r) for r in rows)
        return {
            "lastSNo": self.last_sno,
            "lastDate": self.last_date,
            "cashTotal": float(totals.cash_total),
            "upiTotal": float(totals.upi_total),
            "grandTotal": float(totals.grand_total),
            "todayEntries": rows,
        }

    def submit(self, entry):
        self.submitted.append(entry)
        if self.on_submit:
            self.on_submit()
        if self.submit_error:
            raise ls.LedgerRemoteError(self.submit_error)
        self.rows.append(entry.to_payload())
        self.last_sno = entry.sequence_number
        self.last_date = entry.date
        return {"status": "success"}


def _sale(name="A", amount="100.5", payment="Cash", **extra):
    data = {"patientName": name, "saleAmount": amount, "paymentType": payment, "date": TODAY.isoformat()}
    data.update(extra)
    return data


class LedgerControllerTest(unittest.TestCase):
    def _controller(self, sheet=None):
        controller = srv.LedgerController(sheet, today=lambda: TODAY)
        controller.load()
        return controller

    def test_load_continues_todays_sequence(self):
        controller = self._controller(FakeSheet(last_sno=5, last_date=TODAY.isoformat()))
        self.assertEqual(controller.state.next_sequence_number, 6)
        self.assertTrue(controller.state.synced)

    def test_load_resets_sequence_on_new_day(self):
        controller = self._controller(FakeSheet(last_sno=5, last_date="2024-01-01"))
        self.assertEqual(controller.state.next_sequence_number, 1)

    def test_load_failure_leaves_usable_local_session(self):
        controller = self._controller(FakeSheet(fail_fetch=True))
        state = controller.state
        self.assertEqual(state.next_sequence_number, 1)
        self.assertEqual(state.entries, ())
        self.assertEqual(state.form.date, TODAY.isoformat())
        self.assertIsNone(state.message)
        self.assertEqual(state.status, ls.STATUS_IDLE)
        self.assertFalse(controller.busy)

    def test_submit_reconciles_with_sheet(self):
        sheet = FakeSheet()
        controller = self._controller(sheet)
        controller.submit(_sale("A", "100.5", "Cash"))
        state, outcome = controller.submit(_sale("B", "50", "UPI"))
        self.assertEqual(outcome, "success")
        self.assertEqual([e.sequence_number for e in sheet.submitted], [1, 2])
        self.assertEqual(state.totals.as_display(), {"cash": "100.50", "upi": "50.00", "grand": "150.50"})
        self.assertEqual(state.next_sequence_number, 3)
        self.assertEqual(state.form.patient_name, "")
        self.assertEqual(state.status, ls.STATUS_IDLE)
        self.assertEqual(sheet.fetches, 3)

    def test_invalid_submit_changes_nothing(self):
        sheet = FakeSheet(last_sno=2, last_date=TODAY.isoformat())
        controller = self._controller(sheet)
        fetches = sheet.fetches
        for bad in (_sale(name=""), _sale(amount="abc")):
            state, outcome = controller.submit(bad)
            self.assertEqual(outcome, "invalid")
            self.assertIsNotNone(state.message)
            self.assertEqual(state.entries, ())
            self.assertEqual(state.next_sequence_number, 3)
        self.assertEqual(sheet.submitted, [])
        self.assertEqual(sheet.fetches, fetches)

    def test_remote_failure_keeps_optimistic_entry(self):
        sheet = FakeSheet(submit_error="Sheet is locked")
        controller = self._controller(sheet)
        state, outcome = controller.submit(_sale("A", "10"))
        self.assertEqual(outcome, "remote_error")
        self.assertIn("Sheet is locked", state.message)
        self.assertEqual(len(state.entries), 1)
        self.assertEqual(state.form.patient_name, "")
        self.assertEqual(state.next_sequence_number, 2)

    def test_local_only_session(self):
        controller = self._controller(None)
        controller.submit(_sale("A", "100.5", "Cash"))
        state, outcome = controller.submit(_sale("B", "50", "UPI"))
        self.assertEqual(outcome, "success")
        self.assertEqual([e.sequence_number for e in state.entries], [1, 2])
        self.assertEqual(state.totals.as_display()["grand"], "150.50")
        self.assertFalse(state.synced)
        # refreshing without an endpoint keeps the session's entries
        self.assertEqual(len(controller.load().entries), 2)

    def test_second_submit_while_in_flight_is_rejected(self):
        sheet = FakeSheet()
        controller = self._controller(sheet)
        nested = []
        sheet.on_submit = lambda: nested.append(controller.submit(_sale("B", "5")))
        state, outcome = controller.submit(_sale("A", "10"))
        self.assertEqual(outcome, "success")
        self.assertEqual(nested[0][1], "busy")
        self.assertEqual(nested[0][0].message, srv.BUSY_MESSAGE)
        self.assertEqual(len(sheet.submitted), 1)
        self.assertEqual(len(state.entries), 1)


class DayRolloverTest(unittest.TestCase):
    DAY1 = dt.date(2024, 1, 1)
    DAY2 = dt.date(2024, 1, 2)

    def setUp(self):
        self.clock = [self.DAY1]

    def _today(self):
        return self.clock[0]

    def _controller(self, sheet):
        controller = srv.LedgerController(sheet, today=self._today)
        controller.load()
        return controller

    def test_first_sale_after_midnight_starts_at_one(self):
        sheet = FakeSheet(last_sno=5, last_date=self.DAY1.isoformat(), today=self._today)
        controller = self._controller(sheet)
        controller.submit(_sale("A", "10", date=self.DAY1.isoformat()))
        self.assertEqual(controller.state.next_sequence_number, 7)

        self.clock[0] = self.DAY2
        # form rendered before midnight still carries yesterday's date
        state, outcome = controller.submit(_sale("B", "20", date=self.DAY1.isoformat()))
        self.assertEqual(outcome, "success")
        posted = sheet.submitted[-1]
        self.assertEqual(posted.sequence_number, 1)
        self.assertEqual(posted.date, "2024-01-02")
        self.assertEqual([e.patient_name for e in state.entries], ["B"])
        self.assertEqual(state.next_sequence_number, 2)
        self.assertEqual(state.totals.as_display()["grand"], "20.00")

    def test_snapshot_rolls_over_for_local_session(self):
        controller = self._controller(None)
        controller.submit(_sale("A", "10", date=self.DAY1.isoformat()))
        controller.submit(_sale("B", "10", date=self.DAY1.isoformat()))
        self.assertEqual(controller.current().next_sequence_number, 3)

        self.clock[0] = self.DAY2
        state = controller.current()
        self.assertEqual(state.next_sequence_number, 1)
        self.assertEqual(state.form.date, "2024-01-02")
        self.assertEqual(state.entries, ())
        self.assertEqual(state.totals.as_display()["grand"], "0.00")

    def test_failed_fetch_after_midnight_degrades_to_new_day(self):
        sheet = FakeSheet(last_sno=5, last_date=self.DAY1.isoformat(), today=self._today)
        controller = self._controller(sheet)
        self.assertEqual(controller.state.next_sequence_number, 6)

        self.clock[0] = self.DAY2
        sheet.fail_fetch = True
        state = controller.current()
        self.assertEqual(state.next_sequence_number, 1)
        self.assertEqual(state.form.date, "2024-01-02")
        self.assertFalse(state.synced)
        self.assertEqual(state.status, ls.STATUS_IDLE)

    def test_api_ledger_reports_new_day(self):
        sheet = FakeSheet(last_sno=5, last_date=self.DAY1.isoformat(), today=self._today)
        srv.set_controller(self._controller(sheet))
        self.addCleanup(srv.set_controller, None)
        client = srv.app.test_client()
        self.assertEqual(client.get('/api/ledger').get_json()['sNo'], 6)

        self.clock[0] = self.DAY2
        body = client.get('/api/ledger').get_json()
        self.assertEqual(body['sNo'], 1)
        self.assertEqual(body['date'], '2024-01-02')


class LedgerRoutesTest(unittest.TestCase):
    def setUp(self):
        srv.app.config['TESTING'] = True
        self.sheet = FakeSheet(last_sno=5, last_date=TODAY.isoformat())
        controller = srv.LedgerController(self.sheet, today=lambda: TODAY)
        controller.load()
        srv.set_controller(controller)
        self.client = srv.app.test_client()

    def tearDown(self):
        srv.set_controller(None)

    def test_index_renders_form(self):
        resp = self.client.get('/')
        self.assertEqual(resp.status_code, 200)
        html = resp.get_data(as_text=True)
        self.assertIn('value="6"', html)
        self.assertIn('No sales entries for today yet.', html)
        self.assertIn('Total Sales of Today: ₹ 0.00', html)
        self.assertEqual(resp.headers['Cache-Control'], 'no-store, no-cache, must-revalidate, max-age=0')

    def test_api_ledger_snapshot(self):
        body = self.client.get('/api/ledger').get_json()
        self.assertEqual(body['sNo'], 6)
        self.assertEqual(body['date'], '2024-01-02')
        self.assertEqual(body['totals'], {'cash': '0.00', 'upi': '0.00', 'grand': '0.00'})
        self.assertTrue(body['synced'])

    def test_api_entries_success(self):
        resp = self.client.post('/api/entries', json=_sale('A', '100.5', sNo=99))
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body['status'], 'success')
        self.assertEqual(body['ledger']['entries'][0]['sNo'], 6)
        self.assertEqual(body['ledger']['entries'][0]['saleAmount'], '100.50')
        self.assertEqual(body['ledger']['sNo'], 7)

    def test_api_entries_validation_error(self):
        resp = self.client.post('/api/entries', json=_sale(name=''))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['status'], 'error')
        self.assertEqual(self.sheet.submitted, [])

    def test_api_entries_huge_amount_is_rejected(self):
        for amount in ('1e30', '9' * 29):
            resp = self.client.post('/api/entries', json=_sale(amount=amount))
            self.assertEqual(resp.status_code, 400)
            self.assertIn('Sale Amount', resp.get_json()['message'])
        self.assertEqual(self.sheet.submitted, [])
        resp = self.client.post('/submit', data=_sale(amount='1e30'))
        self.assertEqual(resp.status_code, 400)

    def test_huge_remote_totals_do_not_break_loading(self):
        self.sheet.fetch = lambda: {'lastSNo': 5, 'lastDate': TODAY.isoformat(), 'cashTotal': '1e30',
                                    'grandTotal': '9' * 40, 'todayEntries': []}
        resp = self.client.get('/')
        self.assertEqual(resp.status_code, 200)
        body = self.client.get('/api/ledger').get_json()
        self.assertEqual(body['totals']['cash'], '0.00')
        self.assertEqual(body['sNo'], 6)

    def test_api_entries_rejects_non_object(self):
        resp = self.client.post('/api/entries', data='nope', content_type='application/json')
        self.assertEqual(resp.status_code, 400)

    def test_api_entries_remote_error(self):
        self.sheet.submit_error = 'quota exceeded'
        resp = self.client.post('/api/entries', json=_sale())
        self.assertEqual(resp.status_code, 502)
        self.assertIn('quota exceeded', resp.get_json()['message'])

    def test_form_submit_renders_entry(self):
        resp = self.client.post('/submit', data=_sale('Ravi', '75', 'UPI', cashMemoBill='M-7', phoneNumber='99'))
        self.assertEqual(resp.status_code, 200)
        html = resp.get_data(as_text=True)
        self.assertIn('Ravi', html)
        self.assertIn('Sale saved.', html)
        self.assertIn('UPI: ₹ 75.00', html)

    def test_form_refresh(self):
        self.sheet.last_sno = 9
        resp = self.client.post('/refresh')
        self.assertEqual(resp.status_code, 200)
        self.assertIn('value="10"', resp.get_data(as_text=True))
        self.assertEqual(self.client.post('/api/refresh').get_json()['ledger']['sNo'], 10)


if __name__ == '__main__':
    unittest.main()

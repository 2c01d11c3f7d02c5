import datetime
import json
import os.path
import threading
from collections import namedtuple
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import connection
from django.test import TestCase, SimpleTestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.utils import timezone

import escrow.bizlogic
from escrow import compliance, cycles, limits, lifecycle, trigger, legislative, fec
from escrow.errors import *
from escrow.models import *
from escrow.payments import PaymentAPIClient, DummyPaymentAPIClient
from powerback.models import DonorProfile

date = datetime.date

COMPLIANT_PROFILE = {
	"first_name": "Ada",
	"last_name": "Lovelace",
	"address": "12 Fir St",
	"city": "Rudy",
	"state": "AR",
	"zip": "72952",
	"country": "domestic",
	"is_employed": True,
	"occupation": "Engineer",
	"employer": "Analytical Co",
}

class ComplianceClassifierTestCase(SimpleTestCase):
	def test_contract_cases(self):
		# Every rendition of the classifier must agree with these cases.
		fn = os.path.join(os.path.dirname(compliance.__file__), "contract", "compliance_cases.json")
		with open(fn) as f:
			cases = json.load(f)
		self.assertTrue(len(cases) > 0)
		for case in cases:
			with self.subTest(case["name"]):
				self.assertEqual(compliance.classify(case["profile"]), case["tier"])

	def test_ratchet(self):
		self.assertEqual(compliance.ratchet("compliant", "guest"), "compliant")
		self.assertEqual(compliance.ratchet("guest", "compliant"), "compliant")
		self.assertEqual(compliance.ratchet("guest", "guest"), "guest")
		self.assertEqual(compliance.ratchet(None, "guest"), "guest")
		with self.assertRaises(ValueError):
			compliance.ratchet("guest", "platinum")

class ElectionCycleTestCase(SimpleTestCase):
	def test_general_election_date(self):
		d = cycles.general_election_date
		self.assertEqual(d(2020), date(2020, 11, 3)) # Nov 1 is a Sunday
		self.assertEqual(d(2022), date(2022, 11, 8)) # Nov 1 is a Tuesday
		self.assertEqual(d(2024), date(2024, 11, 5))
		self.assertEqual(d(2026), date(2026, 11, 3))
		self.assertEqual(d(2016), date(2016, 11, 8)) # Nov 1 is a Tuesday

	def test_election_year_for(self):
		self.assertEqual(cycles.election_year_for(date(2025, 3, 1)), 2026)
		self.assertEqual(cycles.election_year_for(date(2026, 1, 1)), 2026)
		self.assertEqual(cycles.election_year_for(date(2026, 11, 2)), 2026)
		self.assertEqual(cycles.election_year_for(date(2026, 11, 3)), 2028) # election day starts the next cycle
		self.assertEqual(cycles.election_year_for(date(2026, 12, 31)), 2028)

	def test_cutoff(self):
		today = date(2024, 6, 1)
		self.assertTrue(cycles.cutoff(date(2024, 11, 4), today))
		self.assertTrue(cycles.cutoff(date(2022, 11, 8), today))
		self.assertFalse(cycles.cutoff(date(2024, 11, 5), today))
		self.assertFalse(cycles.cutoff(date(2022, 11, 7), today))

	def test_buckets(self):
		def schedule_for(year):
			return cycles.ElectionSchedule(year, date(year, 3, 3), cycles.general_election_date(year))
		self.assertEqual(cycles.bucket_for(date(2025, 12, 1), schedule_for), cycles.ElectionBucket(2026, cycles.PRIMARY))
		self.assertEqual(cycles.bucket_for(date(2026, 3, 2), schedule_for), cycles.ElectionBucket(2026, cycles.PRIMARY))
		self.assertEqual(cycles.bucket_for(date(2026, 3, 3), schedule_for), cycles.ElectionBucket(2026, cycles.GENERAL))
		self.assertEqual(cycles.bucket_for(date(2026, 11, 3), schedule_for), cycles.ElectionBucket(2028, cycles.PRIMARY))
		self.assertEqual(cycles.bucket_end(cycles.ElectionBucket(2026, cycles.PRIMARY), schedule_for), date(2026, 3, 3))
		self.assertEqual(cycles.bucket_end(cycles.ElectionBucket(2026, cycles.GENERAL), schedule_for), date(2026, 11, 3))

		# Without a known primary date the whole cycle is one bucket.
		self.assertEqual(cycles.bucket_for(date(2026, 1, 15)), cycles.ElectionBucket(2026, cycles.GENERAL))

	def test_congress_end_date(self):
		self.assertEqual(cycles.congress_end_date(118), date(2025, 1, 3))
		self.assertEqual(cycles.congress_end_date(119), date(2027, 1, 3))

History = namedtuple('History', ['donation', 'tip', 'current_status', 'created', 'candidate_id'])

def h(donation, created, candidate_id="H6XX01001", status="active", tip=0):
	return History(Decimal(donation), Decimal(tip), status, created, candidate_id)

def tx_schedule(year):
	return cycles.ElectionSchedule(year, date(year, 3, 3), cycles.general_election_date(year))

class LimitCalculatorTestCase(SimpleTestCase):
	today = date(2026, 6, 1)

	def setUp(self):
		self.guest = limits.get_tier("guest")
		self.compliant = limits.get_tier("compliant")

	def test_guest_over_per_donation(self):
		check = limits.calculate(self.guest, [], "H6XX01001", 75, today=self.today)
		self.assertTrue(check.exceeds)
		self.assertEqual(check.remaining_limit, 50)
		self.assertEqual(check.reset_date, date(2027, 1, 1))

	def test_guest_over_annual_cap(self):
		history = [h(40, date(2026, 2, 1))]
		check = limits.calculate(self.guest, history, "H6XX01001", 40, today=self.today)
		self.assertTrue(check.exceeds)
		self.assertEqual(check.remaining_limit, 10)
		self.assertFalse(limits.calculate(self.guest, history, "H6XX01001", 10, today=self.today).exceeds)

	def test_guest_cap_is_across_candidates(self):
		history = [h(30, date(2026, 2, 1), candidate_id="S6XX00001")]
		check = limits.calculate(self.guest, history, "H6XX01001", 30, today=self.today)
		self.assertTrue(check.exceeds)
		self.assertEqual(check.remaining_limit, 20)

	def test_uncounted_history(self):
		history = [
			h(40, date(2026, 2, 1), status="defunct"),
			h(40, date(2026, 2, 1), status="paused"),
			h(40, date(2025, 12, 31)), # last year
		]
		check = limits.calculate(self.guest, history, "H6XX01001", 50, today=self.today)
		self.assertFalse(check.exceeds)
		self.assertEqual(check.remaining_limit, 50)

		# Resolved pledges count.
		check = limits.calculate(self.guest, [h(40, date(2026, 2, 1), status="resolved")], "H6XX01001", 50, today=self.today)
		self.assertEqual(check.remaining_limit, 10)

	def test_compliant_primary_and_general_are_separate(self):
		history = [h(3500, date(2026, 2, 1))]

		# In the general bucket, the primary pledge doesn't count.
		check = limits.calculate(self.compliant, history, "H6XX01001", 3500, today=self.today, schedule_for=tx_schedule)
		self.assertFalse(check.exceeds)
		self.assertEqual(check.remaining_limit, 3500)
		self.assertEqual(check.reset_date, date(2026, 11, 3))

		# Still in the primary bucket, it does.
		check = limits.calculate(self.compliant, history, "H6XX01001", 1, today=date(2026, 2, 15), schedule_for=tx_schedule)
		self.assertTrue(check.exceeds)
		self.assertEqual(check.remaining_limit, 0)
		self.assertEqual(check.reset_date, date(2026, 3, 3))

	def test_compliant_is_per_candidate(self):
		history = [h(3500, date(2026, 5, 1), candidate_id="S6XX00001")]
		check = limits.calculate(self.compliant, history, "H6XX01001", 3500, today=self.today, schedule_for=tx_schedule)
		self.assertFalse(check.exceeds)

	def test_compliant_previous_cycle(self):
		history = [h(3500, date(2024, 6, 1))]
		check = limits.calculate(self.compliant, history, "H6XX01001", 3500, today=self.today, schedule_for=tx_schedule)
		self.assertFalse(check.exceeds)

	def test_compliant_per_donation(self):
		check = limits.calculate(self.compliant, [], "H6XX01001", 3600, today=self.today)
		self.assertTrue(check.exceeds)
		self.assertEqual(check.remaining_limit, 3500)

	def test_tip(self):
		history = [h(10, date(2026, 2, 1), tip=4990)]
		check = limits.check_tip(history, 20, today=self.today)
		self.assertTrue(check.exceeds)
		self.assertEqual(check.remaining_limit, 10)
		self.assertFalse(limits.check_tip(history, 10, today=self.today).exceeds)

	def test_current_limits(self):
		ret = limits.current_limits(self.guest, [h(40, date(2026, 2, 1))], today=self.today)
		self.assertEqual(ret["remaining_limit"], 10)
		self.assertEqual(ret["reset_date"], date(2027, 1, 1))
		self.assertEqual(ret["next_reset_date"], date(2028, 1, 1))

		ret = limits.current_limits(self.compliant, [], "H6XX01001", today=date(2026, 2, 1), schedule_for=tx_schedule)
		self.assertEqual(ret["reset_date"], date(2026, 3, 3))
		self.assertEqual(ret["next_reset_date"], date(2026, 11, 3))

		ret = limits.current_limits(self.compliant, [], "H6XX01001", today=self.today, schedule_for=tx_schedule)
		self.assertEqual(ret["reset_date"], date(2026, 11, 3))
		self.assertEqual(ret["next_reset_date"], date(2028, 3, 3))

		with self.assertRaises(ValueError):
			limits.current_limits(self.compliant, [], None, today=self.today)

class PaymentAPITestCase(SimpleTestCase):
	def test_to_cents(self):
		f = PaymentAPIClient.to_cents
		self.assertEqual(f(Decimal('0')), 0)
		self.assertEqual(f(Decimal('.1')), 10)
		self.assertEqual(f(Decimal('12.34')), 1234)
		self.assertEqual(f(Decimal('3500')), 350000)
		self.assertEqual(f("41.46"), 4146)
		with self.assertRaises(ValueError):
			f(Decimal('.001'))
		with self.assertRaises(ValueError):
			f(Decimal('-1'))

	def test_webhook_signature(self):
		body = b'{"type": "capture.succeeded"}'
		sig = PaymentAPIClient.sign_webhook(body, "whsec")
		self.assertTrue(PaymentAPIClient.verify_webhook_signature(body, sig, "whsec"))
		self.assertFalse(PaymentAPIClient.verify_webhook_signature(body + b" ", sig, "whsec"))
		self.assertFalse(PaymentAPIClient.verify_webhook_signature(body, sig, "other"))
		self.assertFalse(PaymentAPIClient.verify_webhook_signature(body, None, "whsec"))
		self.assertFalse(PaymentAPIClient.verify_webhook_signature(body, sig, ""))

	def test_dummy_authorize_is_idempotent(self):
		api = DummyPaymentAPIClient()
		a1 = api.authorize(Decimal("10"), {}, "key-1")
		a2 = api.authorize(Decimal("10"), {}, "key-1")
		self.assertEqual(a1["id"], a2["id"])
		self.assertEqual(len(api.authorizations), 1)

	def test_fee(self):
		self.assertEqual(escrow.bizlogic.compute_fee(Decimal("40")), Decimal("1.46"))
		self.assertEqual(escrow.bizlogic.compute_fee(Decimal("100")), Decimal("3.20"))

def make_donor(email, compliant=False):
	user = get_user_model().objects.create(username=email, email=email)
	if compliant:
		DonorProfile.update_for(user, **COMPLIANT_PROFILE)
	return user

class EscrowTestCase(TestCase):
	def setUp(self):
		# Replace the payment API with our dummy class so we don't make
		# remote API calls.
		self.payments = escrow.bizlogic.PaymentAPI = DummyPaymentAPIClient()

		self.bill = Bill.objects.create(bill_id="hjres54-119", congress=119, title="A joint resolution")
		self.guest = make_donor("guest@example.com")
		self.donor = make_donor("donor@example.com", compliant=True)

	def pledge(self, donor, amount, key, candidate_id="H6XX01001", state="XX", tip=0, bill=None):
		return lifecycle.create(donor, bill or self.bill, candidate_id, state, amount, key, tip=tip)

	def statuses(self, c):
		return [(e.previous_status, e.new_status) for e in c.ledger()]

class CreateTestCase(EscrowTestCase):
	def test_create(self):
		c = self.pledge(self.guest, 40, "k1")
		self.assertEqual(c.current_status, CelebrationStatus.Active)
		self.assertEqual(c.donation, Decimal("40"))
		self.assertEqual(c.fee, Decimal("1.46"))
		self.assertEqual(self.statuses(c), [(None, "active")])

		entry = c.ledger().first()
		self.assertEqual(entry.triggered_by, "donor")
		self.assertEqual(entry.compliance_at_time, "guest")
		self.assertTrue(c.verify_ledger())

		# Authorized, not captured.
		self.assertEqual(len(self.payments.authorizations), 1)
		self.assertEqual(self.payments.authorizations[c.authorization_id]["amount"], 4146)
		self.assertEqual(self.payments.captures, [])

	def test_guest_rejected_with_remaining_limit(self):
		with self.assertRaises(LimitExceededError) as cm:
			self.pledge(self.guest, 75, "k1")
		self.assertEqual(cm.exception.remaining_limit, 50)
		self.assertEqual(cm.exception.reset_date, date(timezone.localdate().year + 1, 1, 1))
		self.assertEqual(Celebration.objects.count(), 0)
		self.assertEqual(DonorInfo.objects.count(), 0)
		self.assertEqual(len(self.payments.authorizations), 0)

	def test_guest_second_pledge_rejected(self):
		self.pledge(self.guest, 40, "k1")
		with self.assertRaises(LimitExceededError) as cm:
			self.pledge(self.guest, 40, "k2")
		self.assertEqual(cm.exception.remaining_limit, 10)
		self.assertEqual(Celebration.objects.count(), 1)
		self.assertEqual(len(self.payments.authorizations), 1)

	def test_paused_pledge_frees_room(self):
		c = self.pledge(self.guest, 40, "k1")
		lifecycle.pause(c.id)
		self.pledge(self.guest, 40, "k2")

		# Resuming doesn't re-check limits, but new pledges see both.
		lifecycle.resume(c.id)
		with self.assertRaises(LimitExceededError) as cm:
			self.pledge(self.guest, 1, "k3")
		self.assertEqual(cm.exception.remaining_limit, 0)

	def test_idempotent(self):
		c1 = self.pledge(self.guest, 40, "k1")
		c2 = self.pledge(self.guest, 40, "k1")
		self.assertEqual(c1.id, c2.id)
		self.assertEqual(Celebration.objects.count(), 1)
		self.assertEqual(len(self.payments.authorizations), 1)

		# A retry is answered from the record even though a new pledge of
		# the same amount would now be over the limit.
		self.assertEqual(self.pledge(self.guest, 40, "k1").id, c1.id)

	def test_key_belongs_to_another_donor(self):
		self.pledge(self.guest, 40, "k1")
		with self.assertRaises(ValidationError):
			self.pledge(self.donor, 40, "k1")

	def test_duplicate_insert_returns_existing(self):
		c = self.pledge(self.guest, 40, "k1")
		with self.assertRaises(DuplicateRequestError) as cm:
			lifecycle.store.create(
				{
					"donor": self.guest,
					"bill": self.bill,
					"candidate_id": "H6XX01001",
					"candidate_state": "XX",
					"donation": Decimal(40),
					"authorization_id": c.authorization_id,
					"idempotency_key": "k1",
				},
				DonorInfo(compliance="guest", extra={}),
				{ "reason": "Celebration created" })
		self.assertEqual(cm.exception.existing.id, c.id)
		self.assertEqual(Celebration.objects.count(), 1)

	def test_validation(self):
		for kwargs in (
			{ "amount": "abc" },
			{ "amount": "0.50" },
			{ "amount": "10.001" },
			{ "amount": "-5" },
			{ "key": "" },
			{ "key": "x" * 129 },
			{ "state": "Texas" },
			{ "candidate_id": "" },
			{ "tip": "-1" },
			):
			with self.subTest(kwargs):
				args = { "amount": 10, "key": "k1", "state": "XX", "candidate_id": "H6XX01001", "tip": 0 }
				args.update(kwargs)
				with self.assertRaises(ValidationError):
					self.pledge(self.guest, args["amount"], args["key"], candidate_id=args["candidate_id"], state=args["state"], tip=args["tip"])
		self.assertEqual(Celebration.objects.count(), 0)
		self.assertEqual(len(self.payments.authorizations), 0)

	def test_closed_bill(self):
		self.bill.mark_triggered()
		with self.assertRaises(ValidationError):
			self.pledge(self.guest, 10, "k1")

	def test_snapshot_is_immutable(self):
		c = self.pledge(self.donor, 100, "k1")
		self.assertEqual(c.donor_info.compliance, "compliant")

		DonorProfile.update_for(self.donor, city="Elsewhere")
		c = Celebration.objects.get(id=c.id)
		self.assertEqual(c.donor_info.extra["city"], "Rudy")
		with self.assertRaises(Exception):
			c.donor_info.save()

	def test_compliant_same_bucket(self):
		self.pledge(self.donor, 3500, "k1")
		with self.assertRaises(LimitExceededError) as cm:
			self.pledge(self.donor, 1, "k2")
		self.assertEqual(cm.exception.remaining_limit, 0)

		# A different candidate is a different limit.
		self.pledge(self.donor, 3500, "k3", candidate_id="S6XX00001")

	def test_compliant_primary_then_general(self):
		# Put today in the general bucket by making today the state's
		# primary, and move the first pledge before it.
		today = timezone.localdate()
		ElectionDate.objects.create(state="XX", election_year=cycles.election_year_for(today),
			election_type=ElectionType.Primary, date=today)

		c1 = self.pledge(self.donor, 3500, "k1")
		Celebration.objects.filter(id=c1.id).update(created=timezone.now() - datetime.timedelta(days=1))

		c2 = self.pledge(self.donor, 3500, "k2")
		self.assertEqual(c2.current_status, CelebrationStatus.Active)
		self.assertEqual(Celebration.objects.count(), 2)

		with self.assertRaises(LimitExceededError):
			self.pledge(self.donor, 1, "k3")

	def test_tip_limit(self):
		with self.assertRaises(LimitExceededError) as cm:
			self.pledge(self.donor, 100, "k1", tip=5001)
		self.assertEqual(cm.exception.kind, "tip")
		self.assertEqual(cm.exception.remaining_limit, 5000)

class LifecycleTestCase(EscrowTestCase):
	def setUp(self):
		super(LifecycleTestCase, self).setUp()
		self.c = self.pledge(self.guest, 40, "k1")

	def test_pause_resume(self):
		c = lifecycle.pause(self.c.id)
		self.assertTrue(c.paused)
		self.assertFalse(c.resolved)

		# Pausing again does nothing.
		lifecycle.pause(self.c.id)

		c = lifecycle.resume(self.c.id)
		self.assertEqual(c.current_status, "active")
		self.assertEqual(self.statuses(c), [(None, "active"), ("active", "paused"), ("paused", "active")])
		self.assertTrue(c.verify_ledger())

	def test_transition_to_same_status(self):
		c = lifecycle.transition(self.c.id, CelebrationStatus.Active)
		self.assertEqual(c.status_ledger.count(), 1)

	def test_transition_to_resolved(self):
		# Resolving through transition() captures the funds.
		c = lifecycle.transition(self.c.id, CelebrationStatus.Resolved, triggered_by=TriggeredBy.Operator)
		self.assertTrue(c.resolved)
		self.assertEqual(c.capture_status, CaptureStatus.Confirmed)
		self.assertEqual(c.ledger().last().triggered_by, "operator")

		# And again is a no-op.
		c = lifecycle.transition(self.c.id, CelebrationStatus.Resolved)
		self.assertTrue(c.resolved)
		self.assertEqual(c.status_ledger.count(), 2)
		self.assertEqual(len(self.payments.captures), 1)

		with self.assertRaises(ValidationError):
			lifecycle.transition(self.c.id, "cancelled")

	def test_transition_to_resolved_from_paused(self):
		lifecycle.pause(self.c.id)
		with self.assertRaises(StaleStateError):
			lifecycle.transition(self.c.id, CelebrationStatus.Resolved, expected_status=CelebrationStatus.Active)
		c = lifecycle.transition(self.c.id, CelebrationStatus.Resolved)
		self.assertEqual(self.statuses(c)[-1], ("paused", "resolved"))

	def test_transition_to_resolved_from_defunct(self):
		lifecycle.mark_defunct(self.c.id, "Donor asked")
		with self.assertRaises(InvalidTransitionError):
			lifecycle.transition(self.c.id, CelebrationStatus.Resolved)
		self.assertEqual(self.payments.captures, [])

	def test_defunct_refused_when_capture_started_after_read(self):
		# mark_defunct read the record before a resolve() committed a
		# pending capture. The update must not go through.
		stale = Celebration.objects.get(id=self.c.id)
		Celebration.objects.filter(id=self.c.id).update(capture_status=CaptureStatus.Pending)
		with mock.patch.object(lifecycle.store, "find_by_id", return_value=stale):
			with self.assertRaises(StaleStateError):
				lifecycle.mark_defunct(self.c.id, "Expired")
		c = Celebration.objects.get(id=self.c.id)
		self.assertEqual(c.current_status, "active")
		self.assertEqual(c.status_ledger.count(), 1)

		# The webhook can still finish the capture.
		c = lifecycle.reconcile_capture(c.authorization_id, True, "ch_1")
		self.assertTrue(c.resolved)

	def test_transition_metadata(self):
		c = lifecycle.transition(self.c.id, CelebrationStatus.Paused, metadata={ "note": "on hold" }, reason="Operator hold", triggered_by=TriggeredBy.Operator)
		entry = c.ledger().last()
		self.assertEqual(entry.metadata, { "note": "on hold" })
		self.assertEqual(entry.reason, "Operator hold")
		self.assertEqual(entry.triggered_by, "operator")
		self.assertTrue(c.verify_ledger())

	def test_resolved_is_absorbing(self):
		lifecycle.resolve(self.c.id)
		for status in ("active", "paused"):
			with self.assertRaises(InvalidTransitionError):
				lifecycle.transition(self.c.id, status)
		with self.assertRaises(InvalidTransitionError):
			lifecycle.mark_defunct(self.c.id, "Too late")
		with self.assertRaises(InvalidTransitionError):
			lifecycle.pause(self.c.id)
		with self.assertRaises(InvalidTransitionError):
			lifecycle.resume(self.c.id)
		c = lifecycle.resolve(self.c.id)
		self.assertTrue(c.resolved)
		self.assertEqual(c.status_ledger.count(), 2)

	def test_defunct_is_absorbing(self):
		c = lifecycle.mark_defunct(self.c.id, "Donor asked")
		self.assertTrue(c.defunct)
		self.assertEqual(c.defunct_reason, "Donor asked")
		self.assertIsNotNone(c.defunct_at)
		self.assertEqual(c.ledger().last().reason, "Donor asked")

		for status in ("active", "paused"):
			with self.assertRaises(InvalidTransitionError):
				lifecycle.transition(self.c.id, status)
		with self.assertRaises(InvalidTransitionError):
			lifecycle.resolve(self.c.id)
		lifecycle.mark_defunct(self.c.id, "Again")
		self.assertEqual(Celebration.objects.get(id=self.c.id).status_ledger.count(), 2)
		self.assertEqual(self.payments.captures, [])

	def test_stale_state(self):
		with self.assertRaises(StaleStateError) as cm:
			lifecycle.store.conditional_update(self.c.id, "paused", new_status="active")
		self.assertEqual(cm.exception.actual_status, "active")

		with self.assertRaises(StaleStateError):
			lifecycle.mark_defunct(self.c.id, "Expired", expected_status=CelebrationStatus.Paused)

		self.assertEqual(Celebration.objects.get(id=self.c.id).status_ledger.count(), 1)

	def test_not_found(self):
		with self.assertRaises(NotFoundError):
			lifecycle.pause(999999)
		with self.assertRaises(NotFoundError):
			lifecycle.store.conditional_update(999999, "active", new_status="paused")

	def test_resolve_captures_once(self):
		c = lifecycle.resolve(self.c.id)
		self.assertTrue(c.resolved)
		self.assertIsNotNone(c.resolved_at)
		self.assertEqual(c.capture_status, CaptureStatus.Confirmed)
		self.assertEqual(c.charge_id, "ch_" + c.authorization_id)

		# A duplicate delivery of the trigger.
		c = lifecycle.resolve(self.c.id)
		self.assertTrue(c.resolved)
		self.assertEqual(len(self.payments.captures), 1)
		self.assertTrue(c.verify_ledger())

	def test_resolve_from_paused(self):
		lifecycle.pause(self.c.id)
		c = lifecycle.resolve(self.c.id)
		self.assertEqual(self.statuses(c)[-1], ("paused", "resolved"))

	def test_capture_failed(self):
		self.payments.capture_outcomes = ["failed"]
		with self.assertRaises(PaymentCaptureFailedError):
			lifecycle.resolve(self.c.id)
		c = Celebration.objects.get(id=self.c.id)
		self.assertEqual(c.current_status, "active")
		self.assertIsNone(c.capture_status)
		self.assertEqual(c.status_ledger.count(), 1)

		# Retryable.
		c = lifecycle.resolve(self.c.id)
		self.assertTrue(c.resolved)

	def test_capture_timeout_is_pending(self):
		self.payments.capture_outcomes = ["timeout"]
		c = lifecycle.resolve(self.c.id)
		self.assertEqual(c.current_status, "active")
		self.assertEqual(c.capture_status, CaptureStatus.Pending)

		# The money may be moving, so it can't be given up on.
		with self.assertRaises(InvalidTransitionError):
			lifecycle.mark_defunct(self.c.id, "Expired")

		# The processor's webhook settles it.
		c = lifecycle.reconcile_capture(c.authorization_id, True, "ch_123")
		self.assertTrue(c.resolved)
		self.assertEqual(c.charge_id, "ch_123")
		self.assertEqual(c.ledger().last().triggered_by, "webhook")

		# Webhooks can be delivered more than once.
		c = lifecycle.reconcile_capture(c.authorization_id, True, "ch_123")
		self.assertEqual(c.status_ledger.count(), 2)
		self.assertTrue(c.verify_ledger())

	def test_capture_processing_is_pending(self):
		self.payments.capture_outcomes = ["processing"]
		c = lifecycle.resolve(self.c.id)
		self.assertFalse(c.resolved)
		self.assertEqual(c.capture_status, CaptureStatus.Pending)

	def test_webhook_failure(self):
		c = lifecycle.reconcile_capture(self.c.authorization_id, False)
		self.assertEqual(c.current_status, "active")
		self.assertEqual(c.capture_status, CaptureStatus.Failed)
		with self.assertRaises(NotFoundError):
			lifecycle.reconcile_capture("auth_unknown", True)

	def test_ledger_tampering_detected(self):
		lifecycle.pause(self.c.id)
		c = Celebration.objects.get(id=self.c.id)
		self.assertTrue(c.verify_ledger())

		StatusLedgerEntry.objects.filter(celebration=c, sequence=1).update(reason="Edited")
		with self.assertRaises(LedgerIntegrityError):
			c.verify_ledger()

	def test_ledger_status_mismatch_detected(self):
		Celebration.objects.filter(id=self.c.id).update(current_status="resolved")
		c = Celebration.objects.get(id=self.c.id)
		self.assertEqual(c.replay_status(), "active")
		with self.assertRaises(LedgerIntegrityError):
			c.verify_ledger()

	def test_ledger_entries_immutable(self):
		entry = self.c.ledger().first()
		entry.reason = "Edited"
		with self.assertRaises(Exception):
			entry.save()
		with self.assertRaises(Exception):
			entry.delete()

	def test_never_deleted(self):
		with self.assertRaises(ValueError):
			self.c.delete()
		with self.assertRaises(ValueError):
			Celebration.objects.filter(id=self.c.id).delete()

class TriggerTestCase(EscrowTestCase):
	def setUp(self):
		super(TriggerTestCase, self).setUp()
		self.other_bill = Bill.objects.create(bill_id="s100-119", congress=119)

		self.c1 = self.pledge(self.guest, 10, "k1")
		self.c2 = self.pledge(self.guest, 10, "k2")
		lifecycle.pause(self.c2.id)
		self.c3 = self.pledge(self.guest, 10, "k3")
		lifecycle.mark_defunct(self.c3.id, "Donor asked")
		self.c4 = self.pledge(self.donor, 100, "k4")
		self.c5 = self.pledge(self.donor, 100, "k5", bill=self.other_bill)

	def captures_of(self, c):
		return [a for a, k in self.payments.captures if a == c.authorization_id]

	def test_resolve_bill(self):
		report = trigger.resolve_bill(self.bill, max_workers=1)
		self.assertTrue(report.ok)
		self.assertEqual(sorted(report.resolved), [self.c1.id, self.c2.id, self.c4.id])

		self.bill.refresh_from_db()
		self.assertEqual(self.bill.status, BillStatus.Triggered)
		self.assertIsNotNone(self.bill.triggered_at)
		self.assertTrue(Celebration.objects.get(id=self.c3.id).defunct)
		self.assertEqual(Celebration.objects.get(id=self.c5.id).current_status, "active")
		self.assertEqual(len(self.payments.captures), 3)

	def test_rerun_after_partial_failure(self):
		# c1 succeeds, c2 fails, c4 succeeds.
		self.payments.capture_outcomes = ["succeeded", "failed"]
		report = trigger.resolve_bill(self.bill, max_workers=1)
		self.assertFalse(report.ok)
		self.assertEqual(sorted(report.resolved), [self.c1.id, self.c4.id])
		self.assertEqual(list(report.failures), [self.c2.id])
		self.assertTrue(Celebration.objects.get(id=self.c2.id).paused)

		report = trigger.resolve_bill(self.bill, max_workers=1)
		self.assertTrue(report.ok)
		self.assertEqual(report.resolved, [self.c2.id])
		self.assertEqual(sorted(report.already_resolved), [self.c1.id, self.c4.id])

		# Nobody was charged twice.
		for c in (self.c1, self.c4):
			self.assertEqual(len(self.captures_of(c)), 1)

	def test_pending_is_reported(self):
		self.payments.capture_outcomes = ["timeout"]
		report = trigger.resolve_bill(self.bill, max_workers=1)
		self.assertEqual(report.pending, [self.c1.id])
		self.assertTrue(report.ok)

	def test_retry_unresolved(self):
		self.payments.capture_outcomes = ["failed"]
		trigger.resolve_bill(self.bill, max_workers=1)
		report = trigger.retry_unresolved(max_workers=1)
		self.assertEqual(report.resolved, [self.c1.id])
		self.assertTrue(report.ok)

		# Nothing left.
		self.assertEqual(trigger.retry_unresolved(max_workers=1).resolved, [])

	def test_stale_state_is_retried(self):
		real_resolve = lifecycle.resolve
		calls = []
		def flaky(celebration_id, **kwargs):
			calls.append(celebration_id)
			if calls.count(celebration_id) == 1:
				raise StaleStateError(celebration_id, "active", "paused")
			return real_resolve(celebration_id, **kwargs)

		with mock.patch("escrow.lifecycle.resolve", side_effect=flaky):
			report = trigger.resolve_bill(self.bill, max_workers=1)
		self.assertTrue(report.ok)
		self.assertEqual(sorted(report.resolved), [self.c1.id, self.c2.id, self.c4.id])

	def test_stale_state_gives_up(self):
		with mock.patch("escrow.lifecycle.resolve", side_effect=StaleStateError(0, "active")) as m:
			report = trigger.resolve_bill(self.bill, max_workers=1)
		self.assertEqual(sorted(report.failures), [self.c1.id, self.c2.id, self.c4.id])
		self.assertEqual(m.call_count, 3 * 4) # ESCROW_STALE_RETRIES + 1 tries each

	def test_vacated_bill(self):
		self.other_bill.vacate()
		with self.assertRaises(ValueError):
			trigger.resolve_bill(self.other_bill, max_workers=1)

	def test_expire_ended_sessions(self):
		old_bill = Bill.objects.create(bill_id="hr1-100", congress=100)
		c = self.pledge(self.donor, 100, "k6", bill=old_bill)

		reports = trigger.expire_ended_sessions(date(2026, 1, 1))
		self.assertEqual([r.bill.bill_id for r in reports], ["hr1-100"])
		self.assertEqual(reports[0].resolved, [c.id])

		c = Celebration.objects.get(id=c.id)
		self.assertTrue(c.defunct)
		self.assertEqual(c.defunct_reason, trigger.SESSION_ENDED)
		old_bill.refresh_from_db()
		self.assertEqual(old_bill.status, BillStatus.Vacated)

		# Bills in the current Congress are untouched.
		self.assertEqual(Celebration.objects.get(id=self.c1.id).current_status, "active")
		self.assertEqual(self.payments.captures, [])

	def test_commands(self):
		call_command("resolve_bill", "hjres54-119", "--workers", "1")
		self.assertTrue(Celebration.objects.get(id=self.c1.id).resolved)

		call_command("verify_ledgers")
		StatusLedgerEntry.objects.filter(celebration_id=self.c1.id, sequence=0).update(reason="Edited")
		with self.assertRaises(CommandError):
			call_command("verify_ledgers")

		with self.assertRaises(CommandError):
			call_command("resolve_bill", "hr9999-119")

class LegislativeTestCase(TestCase):
	def setUp(self):
		self.bill = Bill.objects.create(bill_id="hjres54-119", congress=119)

	def test_parse_bill_id(self):
		self.assertEqual(legislative.parse_bill_id("hjres54-119"), ("hjres", 54, 119))
		self.assertEqual(legislative.bill_api_path("hr1234-118"), "/bill/118/hr/1234")
		for bad in ("hjres54", "xyz1-119", "", None):
			with self.assertRaises(ValueError):
				legislative.parse_bill_id(bad)

	def test_trigger_condition(self):
		actions = [
			{ "type": "IntroReferral", "actionDate": "2025-02-03", "text": "Introduced in House" },
			{ "type": "Floor", "actionDate": "2025-03-05", "actionTime": "14:02:00", "text": "On passage Passed" },
			{ "type": "Floor", "actionDate": "2025-03-06", "text": "Received in the Senate" },
		]
		when = legislative.trigger_condition_met(self.bill, actions=actions)
		when = timezone.localtime(when)
		self.assertEqual(when.date(), date(2025, 3, 5))
		self.assertEqual(when.hour, 14)

		self.assertIsNone(legislative.trigger_condition_met(self.bill, actions=actions[:1]))

	def test_trigger_action_types(self):
		self.bill.extra = { "trigger_action_types": ["BecameLaw"] }
		actions = [{ "type": "Floor", "actionDate": "2025-03-05" }]
		self.assertIsNone(legislative.trigger_condition_met(self.bill, actions=actions))

	def test_create_bill_command(self):
		info = { "bill": { "title": "Providing for congressional disapproval", "number": "7" } }
		with mock.patch("escrow.legislative.query_congress_api", return_value=info) as m:
			call_command("create_bill", "sjres7-119", "--trigger-action-type", "BecameLaw")
		m.assert_called_once_with("/bill/119/sjres/7")

		bill = Bill.objects.get(bill_id="sjres7-119")
		self.assertEqual(bill.congress, 119)
		self.assertEqual(bill.title, "Providing for congressional disapproval")
		self.assertEqual(bill.status, BillStatus.Open)
		self.assertEqual(bill.extra["trigger_action_types"], ["BecameLaw"])
		self.assertIn("as_of", bill.extra["bill_info"])

		with self.assertRaises(CommandError):
			call_command("create_bill", "sjres7-119")
		with self.assertRaises(CommandError):
			call_command("create_bill", "not-a-bill")

class ElectionDatesTestCase(TestCase):
	records = [
		{ "election_state": "TX", "election_date": "2026-03-03", "election_type_id": "P" },
		{ "election_state": "TX", "election_date": "2026-03-10", "election_type_id": "P" },
		{ "election_state": "TX", "election_date": "2026-05-26", "election_type_id": "PR" },
		{ "election_state": "TX", "election_date": "2026-11-03", "election_type_id": "G" },
		{ "election_state": "CA", "election_date": "2026-06-02", "election_type_id": "P" },
		{ "election_state": "CA", "election_date": "2026-01-20", "election_type_id": "CAU" },
	]

	def test_update_election_dates(self):
		self.assertEqual(fec.update_election_dates(2026, records=self.records), 4)
		self.assertEqual(fec.update_election_dates(2026, records=self.records), 4)
		self.assertEqual(ElectionDate.objects.count(), 4)

		schedule_for = ElectionDate.schedule_for("TX")
		self.assertEqual(schedule_for(2026), cycles.ElectionSchedule(2026, date(2026, 3, 3), date(2026, 11, 3)))

		# Runoffs are stored but don't start a new bucket.
		self.assertEqual(cycles.bucket_for(date(2026, 4, 1), schedule_for), cycles.ElectionBucket(2026, cycles.GENERAL))
		self.assertEqual(cycles.bucket_for(date(2026, 2, 1), schedule_for), cycles.ElectionBucket(2026, cycles.PRIMARY))

		# A state we know nothing about.
		self.assertEqual(ElectionDate.schedule_for("ZZ")(2026), cycles.ElectionSchedule(2026, None, date(2026, 11, 3)))

class ViewsTestCase(EscrowTestCase):
	def post_json(self, url, data, **extra):
		return self.client.post(url, data=json.dumps(data), content_type="application/json", **extra)

	def celebration_request(self, amount, key):
		return {
			"bill": "hjres54-119",
			"candidate_id": "H6XX01001",
			"candidate_state": "XX",
			"donation": amount,
			"idempotency_key": key,
		}

	def test_login_required(self):
		self.assertEqual(self.client.get("/api/celebrations").status_code, 401)
		self.assertEqual(self.post_json("/api/celebrations", self.celebration_request("10", "k1")).status_code, 401)

	def test_create_and_list(self):
		self.client.force_login(self.guest)
		resp = self.post_json("/api/celebrations", self.celebration_request("40", "k1"))
		self.assertEqual(resp.status_code, 200)
		c = resp.json()["celebration"]
		self.assertEqual(c["current_status"], "active")
		self.assertEqual(c["donation"], 40)

		# Retried.
		resp = self.post_json("/api/celebrations", self.celebration_request("40", "k1"))
		self.assertEqual(resp.json()["celebration"]["id"], c["id"])

		resp = self.client.get("/api/celebrations")
		self.assertEqual([x["id"] for x in resp.json()["celebrations"]], [c["id"]])

		resp = self.client.get("/api/celebrations/%d" % c["id"])
		self.assertEqual(resp.json()["ledger"][0]["new_status"], "active")

	def test_idempotency_key_header(self):
		self.client.force_login(self.guest)
		data = self.celebration_request("10", None)
		del data["idempotency_key"]
		resp = self.post_json("/api/celebrations", data, HTTP_IDEMPOTENCY_KEY="header-key")
		self.assertEqual(resp.json()["celebration"]["idempotency_key"], "header-key")

	def test_limit_exceeded(self):
		self.client.force_login(self.guest)
		resp = self.post_json("/api/celebrations", self.celebration_request("75", "k1"))
		self.assertEqual(resp.status_code, 403)
		body = resp.json()
		self.assertEqual(body["status"], "limit-exceeded")
		self.assertEqual(body["error"], "LimitExceededError")
		self.assertEqual(body["remaining_limit"], 50)
		self.assertEqual(body["reset_date"], date(timezone.localdate().year + 1, 1, 1).isoformat())

	def test_errors(self):
		self.client.force_login(self.guest)
		data = self.celebration_request("40", "k1")
		data["bill"] = "hr9999-119"
		self.assertEqual(self.post_json("/api/celebrations", data).status_code, 404)
		self.assertEqual(self.post_json("/api/celebrations", self.celebration_request("abc", "k1")).status_code, 400)
		resp = self.client.post("/api/celebrations", data="{", content_type="application/json")
		self.assertEqual(resp.status_code, 400)
		resp = self.client.post("/api/celebrations", data="[1, 2]", content_type="application/json")
		self.assertEqual(resp.status_code, 400)
		self.assertEqual(Celebration.objects.count(), 0)

	def test_pause_resume(self):
		c = self.pledge(self.guest, 10, "k1")
		self.client.force_login(self.guest)
		resp = self.client.post("/api/celebrations/%d/pause" % c.id)
		self.assertEqual(resp.json()["celebration"]["current_status"], "paused")
		resp = self.client.post("/api/celebrations/%d/resume" % c.id)
		self.assertEqual(resp.json()["celebration"]["current_status"], "active")

		lifecycle.resolve(c.id)
		self.assertEqual(self.client.post("/api/celebrations/%d/pause" % c.id).status_code, 409)

		# Someone else's.
		self.client.force_login(self.donor)
		self.assertEqual(self.client.post("/api/celebrations/%d/pause" % c.id).status_code, 404)

	def test_limits(self):
		self.pledge(self.guest, 40, "k1")
		self.client.force_login(self.guest)
		body = self.client.get("/api/limits").json()
		self.assertEqual(body["compliance"], "guest")
		self.assertEqual(body["remaining_limit"], 10)

		self.client.force_login(self.donor)
		body = self.client.get("/api/limits", { "candidate": "H6XX01001", "state": "XX" }).json()
		self.assertEqual(body["compliance"], "compliant")
		self.assertEqual(body["remaining_limit"], 3500)

	def test_resolve_bill(self):
		c = self.pledge(self.guest, 10, "k1")
		self.client.force_login(self.guest)
		self.assertEqual(self.client.post("/api/bills/hjres54-119/resolve").status_code, 403)

		self.guest.is_staff = True
		self.guest.save()
		resp = self.client.post("/api/bills/hjres54-119/resolve")
		self.assertEqual(resp.json()["report"]["resolved"], [c.id])
		self.assertTrue(Celebration.objects.get(id=c.id).resolved)

	@override_settings(PAYMENTS_WEBHOOK_SECRET="whsec_test")
	def test_payments_webhook(self):
		c = self.pledge(self.guest, 10, "k1")
		self.payments.capture_outcomes = ["timeout"]
		lifecycle.resolve(c.id)

		body = json.dumps({ "type": "capture.succeeded", "data": { "authorization_id": c.authorization_id, "charge_id": "ch_9" } }).encode("utf8")

		resp = self.client.post("/api/webhooks/payments", data=body, content_type="application/json", HTTP_X_SIGNATURE="bad")
		self.assertEqual(resp.status_code, 403)
		self.assertFalse(Celebration.objects.get(id=c.id).resolved)

		sig = PaymentAPIClient.sign_webhook(body, "whsec_test")
		resp = self.client.post("/api/webhooks/payments", data=body, content_type="application/json", HTTP_X_SIGNATURE=sig)
		self.assertEqual(resp.status_code, 200)
		self.assertEqual(resp.json()["current_status"], "resolved")
		self.assertEqual(Celebration.objects.get(id=c.id).charge_id, "ch_9")

		body = json.dumps({ "type": "charge.refunded", "data": {} }).encode("utf8")
		sig = PaymentAPIClient.sign_webhook(body, "whsec_test")
		resp = self.client.post("/api/webhooks/payments", data=body, content_type="application/json", HTTP_X_SIGNATURE=sig)
		self.assertEqual(resp.json()["status"], "ignored")

	@override_settings(PAYMENTS_WEBHOOK_SECRET="whsec_test")
	def test_payments_webhook_malformed(self):
		c = self.pledge(self.guest, 10, "k1")
		def post(body, content_type="application/json"):
			sig = PaymentAPIClient.sign_webhook(body, "whsec_test")
			return self.client.post("/api/webhooks/payments", data=body, content_type=content_type, HTTP_X_SIGNATURE=sig)

		# Form-encoded, a list, and an event whose data isn't an object.
		self.assertEqual(post(b"type=capture.succeeded&data=x", "application/x-www-form-urlencoded").status_code, 400)
		self.assertEqual(post(b"[]").status_code, 400)
		self.assertEqual(post(json.dumps({ "type": "capture.succeeded", "data": c.authorization_id }).encode("utf8")).status_code, 400)
		self.assertEqual(Celebration.objects.get(id=c.id).current_status, "active")

class ConcurrencyTestCase(TransactionTestCase):
	# Runs against committed data so that worker threads, each with its
	# own database connection, can see it.

	def setUp(self):
		self.payments = escrow.bizlogic.PaymentAPI = DummyPaymentAPIClient()
		self.bill = Bill.objects.create(bill_id="hjres54-119", congress=119)
		self.guest = make_donor("guest@example.com")
		DonorProfile.update_for(self.guest, first_name="Gus")

	def run_in_threads(self, funcs):
		# Starts the functions together and returns what each returned or raised.
		results = [None] * len(funcs)
		barrier = threading.Barrier(len(funcs))
		def run(i, f):
			try:
				barrier.wait()
				results[i] = f()
			except Exception as e:
				results[i] = e
			finally:
				connection.close()
		threads = [threading.Thread(target=run, args=(i, f)) for i, f in enumerate(funcs)]
		for t in threads: t.start()
		for t in threads: t.join()
		return results

	def test_resolve_bill_in_threads(self):
		celebrations = [
			lifecycle.create(self.guest, self.bill, "H6XX01001", "XX", 5, "k%d" % i)
			for i in range(6)
		]
		lifecycle.pause(celebrations[0].id)

		real_resolve_one = trigger.resolve_one
		if connection.vendor == "sqlite":
			# SQLite has no row locks and allows one writer at a time.
			lock = threading.Lock()
			def resolve_one(*args, **kwargs):
				with lock:
					return real_resolve_one(*args, **kwargs)
		else:
			resolve_one = real_resolve_one

		with mock.patch("escrow.trigger.resolve_one", side_effect=resolve_one) as m:
			report = trigger.resolve_bill(self.bill, max_workers=3)
			self.assertEqual(m.call_count, 6)
		self.assertTrue(report.ok)
		self.assertEqual(sorted(report.resolved), [c.id for c in celebrations])
		self.assertTrue(all(c.resolved for c in Celebration.objects.filter(bill=self.bill)))

		# Running it again in threads captures nothing new.
		with mock.patch("escrow.trigger.resolve_one", side_effect=resolve_one):
			report = trigger.resolve_bill(self.bill, max_workers=3)
		self.assertEqual(sorted(report.already_resolved), [c.id for c in celebrations])
		self.assertEqual(report.resolved, [])

		# One capture per celebration.
		self.assertEqual(sorted(a for a, k in self.payments.captures), sorted(c.authorization_id for c in celebrations))

	@skipUnlessDBFeature('has_select_for_update')
	def test_concurrent_creates_share_one_limit(self):
		# Each pledge fits under the guest cap on its own, but not both.
		results = self.run_in_threads([
			lambda: lifecycle.create(self.guest, self.bill, "H6XX01001", "XX", 40, "k1"),
			lambda: lifecycle.create(self.guest, self.bill, "S6XX00001", "XX", 40, "k2"),
		])
		created = [r for r in results if isinstance(r, Celebration)]
		rejected = [r for r in results if isinstance(r, LimitExceededError)]
		self.assertEqual(len(created), 1, results)
		self.assertEqual(len(rejected), 1, results)
		self.assertEqual(rejected[0].remaining_limit, 10)
		self.assertEqual(Celebration.objects.filter(donor=self.guest).count(), 1)
		self.assertEqual(len(self.payments.authorizations), 1)

	@skipUnlessDBFeature('has_select_for_update')
	def test_concurrent_resolves_capture_once(self):
		c = lifecycle.create(self.guest, self.bill, "H6XX01001", "XX", 10, "k1")
		results = self.run_in_threads([lambda: lifecycle.resolve(c.id)] * 3)
		self.assertTrue(all(isinstance(r, Celebration) and r.resolved for r in results), results)
		self.assertEqual(len(self.payments.captures), 1)
		self.assertTrue(Celebration.objects.get(id=c.id).verify_ledger())

# Escrow resolution.
# ------------------
#
# When a bill's trigger condition is met, every open celebration on it is
# resolved. The batch can be re-run at any time: resolved celebrations
# are skipped by resolve() itself, and failures are collected into the
# report instead of stopping the run.

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from django.conf import settings
from django.db import connection

from escrow import lifecycle
from escrow.errors import EscrowError, StaleStateError, PaymentCaptureFailedError
from escrow.models import Bill, BillStatus, CaptureStatus, Celebration, CelebrationStatus, OPEN_STATUSES, TriggeredBy

logger = logging.getLogger(__name__)

class ResolutionReport(object):
	def __init__(self, bill=None):
		self.bill = bill
		self.resolved = []
		self.already_resolved = []
		self.pending = []
		self.failures = { } # celebration id => error message
		self.lock = threading.Lock()

	def add(self, category, celebration_id, error=None):
		with self.lock:
			if category == "failed":
				self.failures[celebration_id] = error
			else:
				getattr(self, category).append(celebration_id)

	@property
	def ok(self):
		return len(self.failures) == 0

	def to_dict(self):
		return {
			"bill": self.bill.bill_id if self.bill else None,
			"resolved": sorted(self.resolved),
			"already_resolved": sorted(self.already_resolved),
			"pending": sorted(self.pending),
			"failures": { str(k): v for k, v in sorted(self.failures.items()) },
		}

	def __str__(self):
		return "%d resolved, %d already resolved, %d pending, %d failed" % (
			len(self.resolved), len(self.already_resolved), len(self.pending), len(self.failures))

def resolve_one(celebration_id, report, triggered_by=TriggeredBy.System):
	# Resolves one celebration, re-reading and retrying if another actor
	# changed it underneath us.
	attempts = settings.ESCROW_STALE_RETRIES + 1
	for attempt in range(attempts):
		try:
			before = Celebration.objects.filter(id=celebration_id).values_list('current_status', flat=True).first()
			if before == CelebrationStatus.Resolved:
				report.add("already_resolved", celebration_id)
				return
			c = lifecycle.resolve(celebration_id, triggered_by=triggered_by)
			if c.resolved:
				report.add("resolved", celebration_id)
			elif c.capture_status == CaptureStatus.Pending:
				report.add("pending", celebration_id)
			else:
				report.add("failed", celebration_id, "Not resolved (status %s)." % c.current_status)
			return

		except StaleStateError as e:
			logger.info("Retrying celebration %d (attempt %d): %s", celebration_id, attempt + 1, e)
			last_error = e

		except PaymentCaptureFailedError as e:
			logger.warning("Capture failed for celebration %d: %s", celebration_id, e)
			report.add("failed", celebration_id, str(e))
			return

		except EscrowError as e:
			# e.g. made defunct while we were working through the batch.
			report.add("failed", celebration_id, str(e))
			return

		except Exception as e:
			logger.exception("Unexpected error resolving celebration %d.", celebration_id)
			report.add("failed", celebration_id, repr(e))
			return

	report.add("failed", celebration_id, str(last_error))

def run_batch(celebration_ids, report, max_workers=None, triggered_by=TriggeredBy.System):
	if max_workers is None:
		max_workers = settings.ESCROW_RESOLUTION_WORKERS

	if max_workers <= 1 or len(celebration_ids) <= 1:
		for celebration_id in celebration_ids:
			resolve_one(celebration_id, report, triggered_by=triggered_by)
		return report

	def worker(celebration_id):
		try:
			resolve_one(celebration_id, report, triggered_by=triggered_by)
		finally:
			# Each thread has its own database connection.
			connection.close()

	with ThreadPoolExecutor(max_workers=max_workers) as pool:
		list(pool.map(worker, celebration_ids))
	return report

def resolve_bill(bill, max_workers=None, triggered_by=TriggeredBy.System):
	"""Marks the bill triggered and resolves every open celebration on it. Returns a ResolutionReport."""
	if bill.mark_triggered():
		logger.info("Bill %s triggered.", bill.bill_id)

	# Resolved celebrations are included so that a re-run reports them as
	# already resolved. resolve_one skips them without touching the processor.
	ids = list(Celebration.objects
		.filter(bill=bill, current_status__in=OPEN_STATUSES + (CelebrationStatus.Resolved,))
		.order_by('id')
		.values_list('id', flat=True))

	report = run_batch(ids, ResolutionReport(bill), max_workers=max_workers, triggered_by=triggered_by)
	if report.ok:
		logger.info("Bill %s: %s.", bill.bill_id, report)
	else:
		logger.error("Bill %s: %s. Failures will be retried.", bill.bill_id, report)
	return report

def retry_unresolved(max_workers=None, include_pending=False):
	# Open celebrations on triggered bills are ones a previous run could
	# not finish. Pending captures are normally left for the webhook.
	qs = Celebration.objects.filter(bill__status=BillStatus.Triggered, current_status__in=OPEN_STATUSES)
	if not include_pending:
		qs = qs.exclude(capture_status=CaptureStatus.Pending)
	ids = list(qs.order_by('id').values_list('id', flat=True))
	return run_batch(ids, ResolutionReport(), max_workers=max_workers)

SESSION_ENDED = "Congressional session ended without action on target bill"

def expire_bill(bill, reason=SESSION_ENDED):
	# Vacates the bill and makes every open celebration on it defunct. No
	# funds move. Returns a ResolutionReport whose "resolved" list holds
	# the celebrations made defunct.
	if bill.status == BillStatus.Open:
		bill.vacate()
		logger.info("Bill %s vacated.", bill.bill_id)

	report = ResolutionReport(bill)
	ids = list(Celebration.objects
		.filter(bill=bill, current_status__in=OPEN_STATUSES)
		.order_by('id')
		.values_list('id', flat=True))
	for celebration_id in ids:
		try:
			lifecycle.mark_defunct(celebration_id, reason, triggered_by=TriggeredBy.System)
			report.add("resolved", celebration_id)
		except EscrowError as e:
			report.add("failed", celebration_id, str(e))
	return report

def expire_ended_sessions(today):
	# Bills whose Congress has ended without the trigger condition being met.
	reports = []
	for bill in Bill.objects.filter(status=BillStatus.Open).order_by('congress', 'bill_id'):
		if bill.session_end <= today:
			reports.append(expire_bill(bill))
	return reports

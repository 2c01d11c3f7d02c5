# Persistence for celebrations.
# -----------------------------
#
# The lifecycle and the limit calculator go through this narrow
# interface. Every status change is a conditional UPDATE guarded on the
# status the caller last saw, and is written in the same transaction as
# its ledger entry.

from django.db import IntegrityError, transaction
from django.utils import timezone

from escrow.errors import DuplicateRequestError, NotFoundError, StaleStateError
from escrow.models import Celebration, DonorInfo, StatusLedgerEntry
from powerback.utils import jsonable

class CelebrationStore(object):
	def create(self, doc, donor_info, entry):
		# doc is a dict of Celebration fields, donor_info an unsaved
		# DonorInfo, entry a dict of ledger fields for the first entry.
		# Raises DuplicateRequestError carrying the existing record if the
		# idempotency key was used before.
		try:
			with transaction.atomic():
				donor_info.save()
				celebration = Celebration.objects.create(donor_info=donor_info, **doc)
				self.append_entry(celebration, None, celebration.current_status, **entry)
		except IntegrityError:
			existing = self.find_by_idempotency_key(doc["idempotency_key"])
			if existing is None:
				raise
			raise DuplicateRequestError(existing)
		return celebration

	def find_by_id(self, celebration_id, lock=False):
		qs = Celebration.objects.all()
		if lock:
			qs = qs.select_for_update()
		c = qs.filter(id=celebration_id).first()
		if c is None:
			raise NotFoundError("There is no celebration with id %s." % celebration_id)
		return c

	def find_by_idempotency_key(self, key):
		return Celebration.objects.filter(idempotency_key=key).first()

	def find_by_authorization_id(self, authorization_id):
		c = Celebration.objects.filter(authorization_id=authorization_id).first()
		if c is None:
			raise NotFoundError("There is no celebration for authorization %s." % authorization_id)
		return c

	def find(self, **filters):
		return Celebration.objects.filter(**filters).order_by('created', 'id')

	@transaction.atomic
	def conditional_update(self, celebration_id, expected_status, patch=None, new_status=None, entry=None, guard=None):
		# Applies patch (a dict of fields) and, if new_status is given,
		# moves the record to it and appends a ledger entry built from
		# entry. Only if the record is still in expected_status and matches
		# guard, an optional Q object. Returns the updated record.
		fields = dict(patch or {})
		fields["updated"] = timezone.now()
		if new_status is not None:
			fields["current_status"] = new_status

		qs = Celebration.objects.filter(id=celebration_id, current_status=expected_status)
		if guard is not None:
			qs = qs.filter(guard)
		count = qs.update(**fields)
		if count == 0:
			actual = Celebration.objects.filter(id=celebration_id).values_list('current_status', flat=True).first()
			if actual is None:
				raise NotFoundError("There is no celebration with id %s." % celebration_id)
			raise StaleStateError(celebration_id, expected_status, actual)

		celebration = Celebration.objects.get(id=celebration_id)
		if new_status is not None:
			self.append_entry(celebration, expected_status, new_status, **(entry or {}))
		return celebration

	def append_entry(self, celebration, previous_status, new_status, reason="", triggered_by="system", metadata=None, timestamp=None):
		last = celebration.status_ledger.order_by('-sequence').first()
		e = StatusLedgerEntry(
			celebration=celebration,
			sequence=(last.sequence + 1) if last else 0,
			previous_status=str(previous_status) if previous_status else None,
			new_status=str(new_status),
			timestamp=timestamp or timezone.now(),
			reason=(reason or "")[:256],
			triggered_by=str(triggered_by),
			compliance_at_time=celebration.donor_info.compliance,
			# what's hashed must match what comes back out of the database
			metadata=jsonable(metadata or {}),
		)
		e.digest = e.compute_digest(last.digest if last else "")
		e.save()
		return e

import datetime, hashlib
from functools import lru_cache

from django.db import models, transaction
from django.conf import settings
from django.utils import timezone

from escrow import cycles
from escrow.errors import LedgerIntegrityError
from powerback.utils import JSONField, canonical_json

#####################################################################
#
# Bills
#
# A bill whose progress is the condition for releasing funds.
#
#####################################################################

class BillStatus(models.TextChoices):
	Open = "open"
	Triggered = "triggered"
	Vacated = "vacated" # the Congress ended without the bill moving

class Bill(models.Model):
	"""A bill in Congress that celebrations are conditioned on."""

	bill_id = models.CharField(max_length=32, unique=True, help_text="A bill identifier like 'hjres54-119': the bill type, number, and the Congress.")
	title = models.TextField(blank=True, help_text="The bill's title, for display.")
	congress = models.IntegerField(help_text="The Congress the bill was introduced in.")

	created = models.DateTimeField(auto_now_add=True, db_index=True)
	updated = models.DateTimeField(auto_now=True)

	status = models.CharField(max_length=16, choices=BillStatus.choices, default=BillStatus.Open, db_index=True, help_text="Whether the trigger condition has been met.")
	triggered_at = models.DateTimeField(blank=True, null=True, help_text="When the trigger condition was first observed.")

	extra = JSONField(blank=True, default=dict, help_text="Additional information stored with this object.")

	def __str__(self):
		return self.bill_id

	@property
	def session_end(self):
		return cycles.congress_end_date(self.congress)

	@transaction.atomic
	def mark_triggered(self, when=None):
		# Returns True if the bill became triggered now, False if it already
		# was. Locks the row so that two watchers can't both fire it.
		bill = Bill.objects.select_for_update().filter(id=self.id).first()
		if bill.status == BillStatus.Triggered:
			return False
		if bill.status != BillStatus.Open:
			raise ValueError("Bill %s cannot be triggered in status %s." % (bill, bill.status))
		bill.status = BillStatus.Triggered
		bill.triggered_at = when or timezone.now()
		bill.save(update_fields=['status', 'triggered_at', 'updated'])
		self.status, self.triggered_at = bill.status, bill.triggered_at
		return True

	@transaction.atomic
	def vacate(self):
		bill = Bill.objects.select_for_update().filter(id=self.id).first()
		if bill.status != BillStatus.Open:
			raise ValueError("Bill %s cannot be vacated in status %s." % (bill, bill.status))
		bill.status = BillStatus.Vacated
		bill.save(update_fields=['status', 'updated'])
		self.status = bill.status

#####################################################################
#
# Election Dates
#
# Primary and general election dates per state, from the FEC.
#
#####################################################################

class ElectionType(models.TextChoices):
	Primary = "P"
	General = "G"
	Special = "S"
	Runoff = "R"
	GeneralRunoff = "GR"
	SpecialGeneral = "SG"

class ElectionDate(models.Model):
	state = models.CharField(max_length=2, help_text="The USPS abbreviation of the state.")
	election_year = models.IntegerField(help_text="The year of the general election closing the cycle.")
	election_type = models.CharField(max_length=2, choices=ElectionType.choices)
	date = models.DateField()
	extra = JSONField(blank=True, default=dict, help_text="The FEC's record for this election.")

	class Meta:
		unique_together = [('state', 'election_year', 'election_type')]

	def __str__(self):
		return "%s %s %d: %s" % (self.state, self.election_type, self.election_year, self.date)

	@staticmethod
	def schedule_for(state):
		# Returns a function from an election year to the ElectionSchedule
		# for state. Only primaries and generals bound limit buckets. Special
		# and runoff elections are stored but not used here.
		@lru_cache(maxsize=None)
		def schedule(year):
			dates = dict(
				ElectionDate.objects
					.filter(state=state, election_year=year, election_type__in=(ElectionType.Primary, ElectionType.General))
					.values_list('election_type', 'date'))
			return cycles.ElectionSchedule(
				year,
				dates.get(ElectionType.Primary.value),
				dates.get(ElectionType.General.value) or cycles.general_election_date(year))
		return schedule

#####################################################################
#
# Celebrations
#
# An escrowed donation to a candidate, released if the bill moves.
#
#####################################################################

class DonorInfo(models.Model):
	"""The donor's compliance-relevant information at the time a Celebration was made. Instances are immutable."""

	created = models.DateTimeField(auto_now_add=True, db_index=True)
	compliance = models.CharField(max_length=16, help_text="The donor's compliance tier when the snapshot was taken.")
	extra = JSONField(blank=True, default=dict, help_text="The donor's profile fields.")

	def __str__(self):
		return "[%d] %s (%s)" % (self.id, self.name, self.compliance)

	def save(self, *args, **kwargs):
		if self.id:
			raise Exception("This model is immutable.")
		super(DonorInfo, self).save(*args, **kwargs)

	@property
	def name(self):
		return ' '.join(filter(None, (self.extra.get(k) for k in ('first_name', 'last_name'))))

	@staticmethod
	def from_profile(profile, compliance):
		# Does not save.
		return DonorInfo(compliance=compliance, extra=profile.as_compliance_fields())

class CelebrationStatus(models.TextChoices):
	Active = "active"
	Paused = "paused"
	Resolved = "resolved"
	Defunct = "defunct"

# The legal edges of the lifecycle. Resolved and Defunct are absorbing.
TRANSITIONS = {
	CelebrationStatus.Active.value: (CelebrationStatus.Paused.value, CelebrationStatus.Resolved.value, CelebrationStatus.Defunct.value),
	CelebrationStatus.Paused.value: (CelebrationStatus.Active.value, CelebrationStatus.Resolved.value, CelebrationStatus.Defunct.value),
	CelebrationStatus.Resolved.value: (),
	CelebrationStatus.Defunct.value: (),
}

OPEN_STATUSES = (CelebrationStatus.Active, CelebrationStatus.Paused)

class CaptureStatus(models.TextChoices):
	Pending = "pending" # outcome unknown, waiting for the processor's webhook
	Confirmed = "confirmed"
	Failed = "failed"

class TriggeredBy(models.TextChoices):
	System = "system"
	Donor = "donor"
	Operator = "operator"
	Webhook = "webhook"

class NoDeleteManager(models.Manager):
	class CustomQuerySet(models.QuerySet):
		def delete(self):
			# Celebrations end as defunct, they are never deleted.
			raise ValueError("%s records cannot be deleted." % self.model.__name__)
	def get_queryset(self):
		return NoDeleteManager.CustomQuerySet(self.model, using=self._db)

class Celebration(models.Model):
	"""A donor's escrowed donation to a candidate, conditioned on a bill."""

	donor = models.ForeignKey(settings.AUTH_USER_MODEL, related_name="celebrations", on_delete=models.PROTECT, help_text="The user making the celebration.")
	bill = models.ForeignKey(Bill, related_name="celebrations", on_delete=models.PROTECT, help_text="The bill whose progress releases the funds.")
	donor_info = models.ForeignKey(DonorInfo, related_name="celebrations", on_delete=models.PROTECT, help_text="The donor's information when the celebration was made. Never changes.")

	candidate_id = models.CharField(max_length=16, db_index=True, help_text="The FEC candidate ID of the recipient.")
	candidate_name = models.CharField(max_length=128, blank=True, help_text="The candidate's name, for display.")
	candidate_state = models.CharField(max_length=2, help_text="The state the candidate is running in, which determines their primary date.")

	donation = models.DecimalField(max_digits=8, decimal_places=2, help_text="The amount going to the candidate, in dollars.")
	tip = models.DecimalField(max_digits=8, decimal_places=2, default=0, help_text="An optional amount going to our PAC, in dollars.")
	fee = models.DecimalField(max_digits=8, decimal_places=2, default=0, help_text="Processing fees passed on to the donor, in dollars.")

	authorization_id = models.CharField(max_length=128, db_index=True, help_text="The payment processor's ID for the authorized (uncaptured) charge.")
	idempotency_key = models.CharField(max_length=128, unique=True, help_text="The client-supplied key that makes creating this record safe to retry.")

	current_status = models.CharField(max_length=16, choices=CelebrationStatus.choices, default=CelebrationStatus.Active, db_index=True, help_text="Mirrors the new_status of the last entry in the status ledger.")
	capture_status = models.CharField(max_length=16, choices=CaptureStatus.choices, blank=True, null=True, help_text="The outcome of the most recent capture attempt, if any.")
	charge_id = models.CharField(max_length=128, blank=True, null=True, help_text="The payment processor's ID for the captured charge.")

	created = models.DateTimeField(auto_now_add=True, db_index=True)
	updated = models.DateTimeField(auto_now=True)
	resolved_at = models.DateTimeField(blank=True, null=True, help_text="When funds were captured.")
	defunct_at = models.DateTimeField(blank=True, null=True, help_text="When the celebration was given up on.")
	defunct_reason = models.CharField(max_length=256, blank=True, null=True)

	extra = JSONField(blank=True, default=dict, help_text="Additional information stored with this object.")

	objects = NoDeleteManager()

	def __str__(self):
		return "%s => %s on %s [%s]" % (self.donor, self.candidate_id, self.bill, self.current_status)

	def delete(self, *args, **kwargs):
		raise ValueError("Celebrations cannot be deleted. Mark them defunct instead.")

	# Read-only projections of current_status.
	@property
	def resolved(self):
		return self.current_status == CelebrationStatus.Resolved
	@property
	def paused(self):
		return self.current_status == CelebrationStatus.Paused
	@property
	def defunct(self):
		return self.current_status == CelebrationStatus.Defunct

	@property
	def total_amount(self):
		# What was authorized on the donor's card.
		return self.donation + self.tip + self.fee

	def ledger(self):
		return self.status_ledger.order_by('sequence')

	def replay_status(self):
		# Reduce the ledger to a status, checking that every entry follows
		# from the one before it.
		status = None
		for entry in self.ledger():
			if entry.previous_status != status:
				raise LedgerIntegrityError("Ledger entry %d of celebration %d starts from %s but the status was %s." % (
					entry.sequence, self.id, entry.previous_status, status))
			if status is None:
				if entry.new_status != CelebrationStatus.Active:
					raise LedgerIntegrityError("Celebration %d did not start as active." % self.id)
			elif entry.new_status not in TRANSITIONS[status]:
				raise LedgerIntegrityError("Ledger entry %d of celebration %d is an illegal transition %s => %s." % (
					entry.sequence, self.id, status, entry.new_status))
			status = entry.new_status
		return status

	def verify_ledger(self):
		# Checks the hash chain and that the replayed status matches
		# current_status. Raises LedgerIntegrityError.
		prev_digest = ""
		for i, entry in enumerate(self.ledger()):
			if entry.sequence != i:
				raise LedgerIntegrityError("Celebration %d is missing ledger entry %d." % (self.id, i))
			if entry.digest != entry.compute_digest(prev_digest):
				raise LedgerIntegrityError("Ledger entry %d of celebration %d has been altered." % (entry.sequence, self.id))
			prev_digest = entry.digest
		status = self.replay_status()
		if status != self.current_status:
			raise LedgerIntegrityError("Celebration %d is %s but its ledger ends in %s." % (self.id, self.current_status, status))
		return True

class StatusLedgerEntry(models.Model):
	"""One transition in a Celebration's lifecycle. Append-only."""

	celebration = models.ForeignKey(Celebration, related_name="status_ledger", on_delete=models.PROTECT)
	sequence = models.PositiveIntegerField(help_text="0 for the creation entry, incrementing by one.")
	previous_status = models.CharField(max_length=16, choices=CelebrationStatus.choices, blank=True, null=True)
	new_status = models.CharField(max_length=16, choices=CelebrationStatus.choices)
	timestamp = models.DateTimeField()
	reason = models.CharField(max_length=256, blank=True)
	triggered_by = models.CharField(max_length=16, choices=TriggeredBy.choices, default=TriggeredBy.System)
	compliance_at_time = models.CharField(max_length=16, blank=True)
	metadata = JSONField(blank=True, default=dict)
	digest = models.CharField(max_length=64, unique=True, help_text="SHA-256 over this entry and the previous entry's digest.")

	class Meta:
		unique_together = [('celebration', 'sequence')]
		ordering = ['celebration', 'sequence']

	def __str__(self):
		return "%d/%d %s => %s" % (self.celebration_id, self.sequence, self.previous_status, self.new_status)

	def save(self, *args, **kwargs):
		if self.id:
			raise Exception("Ledger entries are immutable.")
		super(StatusLedgerEntry, self).save(*args, **kwargs)

	def delete(self, *args, **kwargs):
		raise Exception("Ledger entries are immutable.")

	def compute_digest(self, prev_digest):
		payload = canonical_json({
			"celebration": self.celebration_id,
			"sequence": self.sequence,
			"previous_status": self.previous_status,
			"new_status": self.new_status,
			"timestamp": self.timestamp.astimezone(datetime.timezone.utc).isoformat(),
			"reason": self.reason,
			"triggered_by": self.triggered_by,
			"compliance_at_time": self.compliance_at_time,
			"metadata": self.metadata,
		})
		return hashlib.sha256((prev_digest + payload).encode("utf8")).hexdigest()

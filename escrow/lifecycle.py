# The celebration lifecycle.
# --------------------------
#
#   active  -> paused, resolved, defunct
#   paused  -> active, resolved, defunct
#   resolved, defunct: terminal
#
# Every change goes through CelebrationStore.conditional_update, so two
# actors racing on the same record can't both win: the loser gets a
# StaleStateError. Funds are captured only on the way into resolved,
# which is why resolve() is the only way to get there.

import decimal
import logging

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from escrow import bizlogic, compliance, cycles, limits
from escrow.errors import (
	ValidationError, LimitExceededError, DuplicateRequestError,
	InvalidTransitionError, StaleStateError, NotFoundError)
from escrow.models import (
	Bill, BillStatus, CaptureStatus, Celebration, CelebrationStatus,
	DonorInfo, ElectionDate, TRANSITIONS, TriggeredBy)
from escrow.store import CelebrationStore
from powerback.models import DonorProfile

logger = logging.getLogger(__name__)

store = CelebrationStore()

def parse_amount(value, field, minimum=0):
	try:
		amount = decimal.Decimal(str(value))
	except (decimal.InvalidOperation, TypeError):
		raise ValidationError("%s must be a number." % field)
	if not amount.is_finite() or amount.as_tuple().exponent < -2:
		raise ValidationError("%s must be a whole number of cents." % field)
	if amount < minimum:
		raise ValidationError("%s must be at least %s." % (field, minimum))
	return amount

def validate_request(bill, candidate_id, candidate_state, donation, tip, idempotency_key):
	# Returns (donation, tip) as Decimals. Nothing has been written yet.
	if not idempotency_key or len(idempotency_key) > 128:
		raise ValidationError("An idempotency key of at most 128 characters is required.")
	if not candidate_id:
		raise ValidationError("A candidate is required.")
	if not candidate_state or len(candidate_state) != 2:
		raise ValidationError("The candidate's state must be a two-letter abbreviation.")
	if bill.status != BillStatus.Open:
		raise ValidationError("Bill %s is no longer accepting celebrations." % bill.bill_id)
	donation = parse_amount(donation, "The donation", minimum=decimal.Decimal(settings.MINIMUM_DONATION))
	tip = parse_amount(tip or 0, "The tip")
	return donation, tip

def check_limits(tier_name, history, candidate_id, candidate_state, donation, tip, today=None):
	# Raises LimitExceededError if the donation or the tip is over a limit.
	tier = limits.get_tier(tier_name)
	check = limits.calculate(tier, history, candidate_id, donation, today=today,
		schedule_for=ElectionDate.schedule_for(candidate_state))
	if check.exceeds:
		raise LimitExceededError(
			"This donation would exceed your limit. You may give up to $%s until %s." % (check.remaining_limit, check.reset_date),
			check.remaining_limit, check.limit, check.reset_date)
	if tip:
		tip_check = limits.check_tip(history, tip, today=today)
		if tip_check.exceeds:
			raise LimitExceededError(
				"This tip would exceed the annual limit on contributions to our PAC.",
				tip_check.remaining_limit, tip_check.limit, tip_check.reset_date, kind="tip")

def create(donor, bill, candidate_id, candidate_state, donation, idempotency_key, tip=0, candidate_name="", payment_method=None):
	"""Creates an active Celebration, or returns the existing one if the idempotency key was used before."""

	# A retry of a request we already completed.
	existing = store.find_by_idempotency_key(idempotency_key)
	if existing is not None:
		return _check_owner(existing, donor)

	donation, tip = validate_request(bill, candidate_id, candidate_state, donation, tip, idempotency_key)

	with transaction.atomic():
		# Lock the donor's profile. Two creates for the same donor are
		# serialized from here until commit, so the limit check below can't
		# be invalidated by a concurrent pledge.
		profile, _ = DonorProfile.objects.select_for_update().get_or_create(user=donor)

		# Check again now that we hold the lock.
		existing = store.find_by_idempotency_key(idempotency_key)
		if existing is not None:
			return _check_owner(existing, donor)

		# Save a promotion if the profile now qualifies. The stored tier
		# never goes down.
		tier = profile.compliance
		if compliance.ratchet(tier, profile.classify()) != tier:
			profile.save()
			tier = profile.compliance

		check_limits(tier, store.find(donor=donor), candidate_id, candidate_state, donation, tip)

		fee = bizlogic.compute_fee(donation + tip)
		auth = bizlogic.authorize_celebration(
			donation + tip + fee,
			{
				"donor": donor.id,
				"bill": bill.bill_id,
				"candidate": candidate_id,
				"idempotency_key": idempotency_key,
			},
			idempotency_key,
			payment_method=payment_method)

		# From here on, if there is a problem then we need to print the
		# authorization before we lose track of it, since nothing will be
		# written to the database on an error.
		try:
			celebration = store.create(
				{
					"donor": donor,
					"bill": bill,
					"candidate_id": candidate_id,
					"candidate_name": candidate_name or "",
					"candidate_state": candidate_state.upper(),
					"donation": donation,
					"tip": tip,
					"fee": fee,
					"authorization_id": auth["id"],
					"idempotency_key": idempotency_key,
					"current_status": CelebrationStatus.Active,
				},
				DonorInfo.from_profile(profile, tier),
				{
					"reason": "Celebration created",
					"triggered_by": TriggeredBy.Donor,
					"metadata": { "authorization_id": auth["id"], "amount": donation + tip + fee },
				})
		except DuplicateRequestError as e:
			# Lost a race with a request carrying the same key. The processor
			# returned the same authorization to both of us.
			return _check_owner(e.existing, donor)
		except Exception as e:
			import rtyaml
			raise Exception("Something went wrong saving a celebration to the database (%s). The database transaction is about to be rolled back. But the authorization was already made.\n\n%s" % (str(e), rtyaml.dump(auth)))

	logger.info("Created celebration %d: $%s to %s on %s.", celebration.id, donation, candidate_id, bill.bill_id)
	return celebration

def _check_owner(celebration, donor):
	if celebration.donor_id != donor.id:
		raise ValidationError("That idempotency key belongs to another request.")
	return celebration

def _transition(celebration_id, new_status, reason, triggered_by, metadata=None, expected_status=None, patch=None, guard=None):
	c = store.find_by_id(celebration_id)
	current = CelebrationStatus(c.current_status).value
	new_status = CelebrationStatus(new_status).value

	# Moving to where the record already is succeeds without doing
	# anything, so retries are harmless.
	if current == new_status:
		return c

	if new_status not in TRANSITIONS[current]:
		raise InvalidTransitionError("A celebration cannot go from %s to %s." % (current, new_status))

	if expected_status is not None and current != expected_status:
		raise StaleStateError(c.id, expected_status, current)

	c = store.conditional_update(c.id, current,
		patch=patch,
		guard=guard,
		new_status=new_status,
		entry={ "reason": reason, "triggered_by": triggered_by, "metadata": metadata })
	logger.info("Celebration %d is now %s (%s).", c.id, new_status, reason)
	return c

def transition(celebration_id, new_status, metadata=None, reason="", triggered_by=TriggeredBy.System, expected_status=None):
	"""Moves a celebration to new_status. Moving to resolved captures the funds via resolve()."""
	if new_status not in CelebrationStatus.values:
		raise ValidationError("%s is not a celebration status." % new_status)
	if new_status == CelebrationStatus.Resolved:
		c = store.find_by_id(celebration_id)
		if c.resolved:
			return c
		if expected_status is not None and c.current_status != expected_status:
			raise StaleStateError(c.id, expected_status, c.current_status)
		return resolve(celebration_id, triggered_by=triggered_by, reason=reason or "Resolved")
	if new_status == CelebrationStatus.Defunct:
		return mark_defunct(celebration_id, reason, triggered_by=triggered_by, metadata=metadata, expected_status=expected_status)
	return _transition(celebration_id, new_status, reason, triggered_by, metadata=metadata, expected_status=expected_status)

def pause(celebration_id, triggered_by=TriggeredBy.Donor):
	return _transition(celebration_id, CelebrationStatus.Paused, "Paused", triggered_by, expected_status=CelebrationStatus.Active)

def resume(celebration_id, triggered_by=TriggeredBy.Donor):
	return _transition(celebration_id, CelebrationStatus.Active, "Resumed", triggered_by, expected_status=CelebrationStatus.Paused)

@transaction.atomic
def mark_defunct(celebration_id, reason, triggered_by=TriggeredBy.System, metadata=None, expected_status=None):
	# Lock the row. A resolve() in progress holds the same lock while it
	# talks to the processor, so we see its capture_status once it commits.
	c = store.find_by_id(celebration_id, lock=True)
	if c.capture_status == CaptureStatus.Pending and not c.defunct:
		# The funds may be moving. Wait for the processor to tell us.
		raise InvalidTransitionError("Celebration %d has a capture in progress and cannot be made defunct." % c.id)
	now = timezone.now()
	return _transition(celebration_id, CelebrationStatus.Defunct, reason, triggered_by,
		metadata=metadata, expected_status=expected_status,
		patch={ "defunct_at": now, "defunct_reason": reason[:256] },
		# and never if a capture started after we looked
		guard=~Q(capture_status=CaptureStatus.Pending))

def resolve(celebration_id, triggered_by=TriggeredBy.System, reason="Bill trigger condition met"):
	"""Captures the celebration's funds and marks it resolved.

	Returns the celebration. If the capture outcome is unknown, the
	celebration keeps its status and gets capture_status = pending. The
	processor's webhook then finishes the job via reconcile_capture().
	Raises PaymentCaptureFailedError, leaving the record unchanged, if
	the processor refuses the capture."""

	with transaction.atomic():
		# Lock the row so that two resolvers of the same celebration are
		# serialized. The second sees resolved and stops.
		c = store.find_by_id(celebration_id, lock=True)

		if c.resolved:
			logger.info("Celebration %d is already resolved.", c.id)
			return c
		if c.current_status not in (CelebrationStatus.Active, CelebrationStatus.Paused):
			raise InvalidTransitionError("A %s celebration cannot be resolved." % c.current_status)

		capture_status, capture = bizlogic.capture_celebration(c)

		if capture_status == CaptureStatus.Pending:
			extra = dict(c.extra)
			extra["pending_capture"] = capture
			return store.conditional_update(c.id, c.current_status,
				patch={ "capture_status": CaptureStatus.Pending, "extra": extra })

		# From here on the money has moved. If saving fails, dump what we
		# know so it can be fixed by hand.
		try:
			return _record_capture(c, capture.get("id"), triggered_by, reason, { "capture": capture })
		except StaleStateError:
			logger.error("Captured celebration %d but could not mark it resolved.", c.id)
			raise
		except Exception as e:
			import rtyaml
			raise Exception("Something went wrong saving a resolved celebration to the database (%s). The database transaction is about to be rolled back. But the capture was already made.\n\n%s" % (str(e), rtyaml.dump(capture)))

def _record_capture(c, charge_id, triggered_by, reason, metadata):
	return store.conditional_update(c.id, c.current_status,
		patch={
			"capture_status": CaptureStatus.Confirmed,
			"charge_id": charge_id,
			"resolved_at": timezone.now(),
		},
		new_status=CelebrationStatus.Resolved,
		entry={ "reason": reason, "triggered_by": triggered_by, "metadata": metadata })

@transaction.atomic
def reconcile_capture(authorization_id, succeeded, charge_id=None):
	"""Applies the processor's word on a capture. Safe to call repeatedly."""

	c = store.find_by_authorization_id(authorization_id)
	c = store.find_by_id(c.id, lock=True)

	if not succeeded:
		if c.resolved:
			# We never mark a celebration resolved without a confirmed
			# capture, so this needs a person to look at it.
			logger.error("Processor reports a failed capture for resolved celebration %d.", c.id)
			return c
		logger.warning("Capture failed for celebration %d.", c.id)
		return store.conditional_update(c.id, c.current_status, patch={ "capture_status": CaptureStatus.Failed })

	if c.resolved:
		return c
	if c.defunct:
		logger.error("Processor captured funds for defunct celebration %d (charge %s).", c.id, charge_id)
		return c

	return _record_capture(c, charge_id, TriggeredBy.Webhook, "Capture confirmed by the payment processor", { "charge_id": charge_id })

def donor_limits(donor, candidate_id=None, candidate_state=None, today=None):
	# What the donor can still give, for display.
	profile = DonorProfile.objects.filter(user=donor).first()
	tier = limits.get_tier(profile.compliance if profile else compliance.GUEST)
	schedule_for = ElectionDate.schedule_for(candidate_state) if candidate_state else cycles.default_schedule
	return limits.current_limits(tier, store.find(donor=donor), candidate_id, today=today, schedule_for=schedule_for)

def find_bill(bill_id):
	bill = Bill.objects.filter(bill_id=bill_id).first()
	if bill is None:
		raise NotFoundError("There is no bill %s." % bill_id)
	return bill

# Donation limits.
# ----------------
#
# Given a donor's compliance tier and their pledge history, compute how
# much more they may pledge. Everything here operates on plain values and
# any iterable of history records with donation, tip, current_status,
# created and candidate_id attributes, so it can be used on model
# instances or on stand-ins.

import decimal
from collections import namedtuple

from django.conf import settings
from django.utils import timezone

from escrow import compliance, cycles

ANNUAL = "annual"
ELECTION_CYCLE = "election_cycle"

ComplianceTier = namedtuple('ComplianceTier', ['name', 'per_donation_limit', 'annual_cap', 'per_election_limit', 'reset_policy'])

# exceeds: whether the proposed amount would break a limit.
# remaining_limit: the most that could be pledged right now.
LimitCheck = namedtuple('LimitCheck', ['exceeds', 'remaining_limit', 'limit', 'current_total', 'reset_date'])

# Statuses whose amounts don't count against any limit.
UNCOUNTED_STATUSES = ("defunct", "paused")

def get_tier(name):
	limits = settings.ESCROW_LIMITS
	D = decimal.Decimal
	if name == compliance.GUEST:
		return ComplianceTier(
			name=name,
			per_donation_limit=D(str(limits["guest"]["per_donation"])),
			annual_cap=D(str(limits["guest"]["annual"])),
			per_election_limit=None,
			reset_policy=ANNUAL)
	if name == compliance.COMPLIANT:
		return ComplianceTier(
			name=name,
			per_donation_limit=D(str(limits["compliant"]["per_donation"])),
			annual_cap=None,
			per_election_limit=D(str(limits["compliant"]["per_election"])),
			reset_policy=ELECTION_CYCLE)
	raise ValueError("Invalid compliance tier: %s" % repr(name))

def local_date(dt):
	# Pledge timestamps are aware datetimes. Limits are evaluated in the
	# site's local time (settings.TIME_ZONE).
	if hasattr(dt, 'hour'):
		return timezone.localdate(dt)
	return dt

def _counted(history):
	return [c for c in history if c.current_status not in UNCOUNTED_STATUSES]

def _this_calendar_year(history, today):
	return [c for c in _counted(history) if local_date(c.created).year == today.year]

def _total(records, field="donation"):
	return sum((decimal.Decimal(getattr(c, field) or 0) for c in records), decimal.Decimal(0))

def calculate(tier, history, candidate_id, amount, today=None, schedule_for=cycles.default_schedule):
	# Returns a LimitCheck for pledging amount to candidate_id. tier is
	# a ComplianceTier. schedule_for gives the ElectionSchedule for the
	# candidate's state in a given election year.

	if today is None: today = timezone.localdate()
	amount = decimal.Decimal(amount)

	if tier.reset_policy == ANNUAL:
		# Guests: a cap across all candidates per calendar year, plus
		# a cap on any single pledge.
		current_total = _total(_this_calendar_year(history, today))
		limit = tier.annual_cap
		reset_date = cycles.next_calendar_year_start(today)

	elif tier.reset_policy == ELECTION_CYCLE:
		# Compliant donors: a cap per candidate per election, where the
		# primary and the general are separate elections.
		current_bucket = cycles.bucket_for(today, schedule_for)
		same_bucket = [
			c for c in _counted(history)
			if c.candidate_id == candidate_id
			and cycles.bucket_for(local_date(c.created), schedule_for) == current_bucket
		]
		current_total = _total(same_bucket)
		limit = tier.per_election_limit
		reset_date = cycles.bucket_end(current_bucket, schedule_for)

	else:
		raise ValueError("Unknown reset policy %s." % tier.reset_policy)

	room = limit - current_total
	exceeds = (amount > tier.per_donation_limit) or (current_total + amount > limit)
	remaining = max(decimal.Decimal(0), min(tier.per_donation_limit, room))

	return LimitCheck(
		exceeds=exceeds,
		remaining_limit=remaining,
		limit=limit,
		current_total=current_total,
		reset_date=reset_date)

def check_tip(history, tip, today=None):
	# Tips go to our PAC, which may take only so much from one person
	# in a calendar year.
	if today is None: today = timezone.localdate()
	tip = decimal.Decimal(tip or 0)
	limit = decimal.Decimal(str(settings.ESCROW_LIMITS["pac"]["annual"]))
	current_total = _total(_this_calendar_year(history, today), field="tip")
	return LimitCheck(
		exceeds=(current_total + tip > limit),
		remaining_limit=max(decimal.Decimal(0), limit - current_total),
		limit=limit,
		current_total=current_total,
		reset_date=cycles.next_calendar_year_start(today))

def current_limits(tier, history, candidate_id=None, today=None, schedule_for=cycles.default_schedule):
	# A summary for displaying to the donor what they can still give.
	if today is None: today = timezone.localdate()
	if tier.reset_policy == ELECTION_CYCLE and candidate_id is None:
		raise ValueError("A candidate is required for per-election limits.")

	check = calculate(tier, history, candidate_id, 0, today=today, schedule_for=schedule_for)

	if tier.reset_policy == ANNUAL:
		next_reset_date = cycles.next_calendar_year_start(check.reset_date)
	else:
		bucket = cycles.bucket_for(today, schedule_for)
		if bucket.election == cycles.PRIMARY:
			next_reset_date = cycles.bucket_end(cycles.ElectionBucket(bucket.year, cycles.GENERAL), schedule_for)
		else:
			next_reset_date = cycles.bucket_end(cycles.bucket_for(check.reset_date, schedule_for), schedule_for)

	return {
		"compliance": tier.name,
		"reset_policy": tier.reset_policy,
		"per_donation_limit": tier.per_donation_limit,
		"effective_limit": check.limit,
		"current_total": check.current_total,
		"remaining_limit": check.remaining_limit,
		"reset_date": check.reset_date,
		"next_reset_date": next_reset_date,
		"pac": check_tip(history, 0, today=today)._asdict(),
	}

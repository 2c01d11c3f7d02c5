# Election-cycle date math.
# -------------------------
#
# Pure functions over datetime.date values. Nothing here reads the clock
# or the database: callers pass "today" and any state-specific primary
# dates in explicitly.

import datetime
from collections import namedtuple

PRIMARY = "primary"
GENERAL = "general"

# The dates that bound one federal election cycle in one state. primary
# may be None when we don't know the state's primary date, in which case
# the whole cycle is a single general-election bucket.
ElectionSchedule = namedtuple('ElectionSchedule', ['year', 'primary', 'general'])

# A per-candidate limit bucket: the cycle (named by its general election
# year) and which election within it.
ElectionBucket = namedtuple('ElectionBucket', ['year', 'election'])

def general_election_date(year):
	"""The first Tuesday after the first Monday in November of year."""
	nov1 = datetime.date(year, 11, 1)
	# Monday is weekday 0, Tuesday is 1. Advance to the first Tuesday
	# on or after November 1...
	d = nov1 + datetime.timedelta(days=(1 - nov1.weekday()) % 7)
	# ...but if that Tuesday is the 1st, there was no Monday before it.
	if d.day == 1:
		d += datetime.timedelta(days=7)
	return d

def election_year_for(d):
	# The (even) year of the general election that closes the cycle d
	# belongs to. A date on election day itself belongs to the next cycle.
	year = d.year
	if year % 2 == 1:
		return year + 1
	if d >= general_election_date(year):
		return year + 2
	return year

def cycle_bounds(d):
	# Returns (start, end): the general election that opened the cycle
	# containing d and the one that closes it. start <= d < end.
	year = election_year_for(d)
	return general_election_date(year - 2), general_election_date(year)

def cutoff(reference_date, today):
	"""Whether reference_date is before the next general election as of today.

	This is the election-cycle cutoff for per-candidate limits. It also
	requires reference_date to be on or after the previous general
	election, so only pledges in the current cycle count."""
	start, end = cycle_bounds(today)
	return start <= reference_date < end

def default_schedule(year):
	return ElectionSchedule(year, None, general_election_date(year))

def bucket_for(d, schedule_for=default_schedule):
	# schedule_for maps an election year to that year's ElectionSchedule.
	year = election_year_for(d)
	schedule = schedule_for(year)
	if schedule.primary is not None and d < schedule.primary:
		return ElectionBucket(year, PRIMARY)
	return ElectionBucket(year, GENERAL)

def bucket_end(bucket, schedule_for=default_schedule):
	# The date the bucket's limits reset: the election that closes it.
	schedule = schedule_for(bucket.year)
	if bucket.election == PRIMARY:
		return schedule.primary
	return schedule.general or general_election_date(bucket.year)

def congress_end_date(congress):
	# Each Congress ends at noon on January 3rd of the odd year after its
	# second session. The 1st Congress began in 1789.
	return datetime.date(1789 + 2 * congress, 1, 3)

def next_calendar_year_start(today):
	return datetime.date(today.year + 1, 1, 1)

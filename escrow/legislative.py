import logging
import re

import dateutil.parser, dateutil.tz

from django.conf import settings
from django.utils.timezone import now, make_aware

from escrow.models import Bill
from escrow.utils import query_json_api

logger = logging.getLogger(__name__)

CONGRESS_API = "https://api.congress.gov/v3"

# Our bill type codes and the Congress.gov API's.
BILL_TYPES = { "hr": "hr", "s": "s", "hjres": "hjres", "sjres": "sjres", "hconres": "hconres", "sconres": "sconres", "hres": "hres", "sres": "sres" }

# Action types that meet the trigger condition unless a bill says
# otherwise in extra["trigger_action_types"]. A floor action is a
# chamber taking the bill up.
DEFAULT_TRIGGER_ACTION_TYPES = ("Floor",)

def parse_bill_id(bill_id):
	# split/validate the bill ID
	m = re.match(r"^([a-z]+)(\d+)-(\d+)$", bill_id or "")
	if not m: raise ValueError("'%s' is not a bill ID, e.g. hr1234-119." % bill_id)
	bill_type, bill_number, bill_congress = m.groups()
	if bill_type not in BILL_TYPES: raise ValueError("'%s' is not a bill type." % bill_type)
	return bill_type, int(bill_number), int(bill_congress)

def parse_capitol_local_time(dt):
	# Congress.gov dates are in Washington's local time.
	if not hasattr(parse_capitol_local_time, 'tz'):
		parse_capitol_local_time.tz = dateutil.tz.gettz('America/New_York')
	return make_aware(dateutil.parser.parse(dt), parse_capitol_local_time.tz)

def query_congress_api(path, params={}):
	params = dict(params)
	params.update({ "api_key": settings.CONGRESS_API_KEY, "format": "json" })
	return query_json_api(CONGRESS_API + path, params)

def bill_api_path(bill_id):
	bill_type, bill_number, bill_congress = parse_bill_id(bill_id)
	return "/bill/%d/%s/%d" % (bill_congress, BILL_TYPES[bill_type], bill_number)

def create_bill(bill_id):
	# Creates a Bill from Congress.gov's record of it.
	bill_type, bill_number, bill_congress = parse_bill_id(bill_id)
	if Bill.objects.filter(bill_id=bill_id).exists():
		raise ValueError("Bill %s already exists." % bill_id)

	info = query_congress_api(bill_api_path(bill_id))["bill"]

	# we're going to cache the bill info, so add a timestamp for the retrieval date
	info['as_of'] = now().isoformat()

	return Bill.objects.create(
		bill_id=bill_id,
		congress=bill_congress,
		title=info.get("title", ""),
		extra={ "bill_info": info })

def get_bill_actions(bill):
	return query_congress_api(bill_api_path(bill.bill_id) + "/actions", { "limit": 250 }).get("actions", [])

def find_trigger_action(bill, actions=None):
	# Returns the earliest action meeting the bill's trigger condition,
	# or None.
	if actions is None:
		actions = get_bill_actions(bill)
	types = bill.extra.get("trigger_action_types") or DEFAULT_TRIGGER_ACTION_TYPES
	matches = [a for a in actions if a.get("type") in types]
	if not matches:
		return None
	return min(matches, key=lambda a: (a.get("actionDate", ""), a.get("actionTime", "")))

def trigger_condition_met(bill, actions=None):
	"""Returns the time the trigger condition was met for bill, or None if it hasn't been."""
	action = find_trigger_action(bill, actions=actions)
	if action is None:
		return None
	logger.info("Bill %s: %s", bill.bill_id, action.get("text"))
	when = action.get("actionDate")
	if action.get("actionTime"):
		when += " " + action["actionTime"]
	return parse_capitol_local_time(when)

# Election dates from the FEC's OpenFEC API.

import logging

import dateutil.parser

from django.conf import settings
from django.db import transaction

from escrow.models import ElectionDate, ElectionType
from escrow.utils import query_json_api

logger = logging.getLogger(__name__)

OPENFEC_API = "https://api.open.fec.gov/v1"

# OpenFEC election_type_id => ours. Types not listed are ignored.
ELECTION_TYPES = {
	"P": ElectionType.Primary,
	"G": ElectionType.General,
	"R": ElectionType.Runoff,
	"PR": ElectionType.Runoff,
	"GR": ElectionType.GeneralRunoff,
	"SP": ElectionType.Special,
	"SG": ElectionType.SpecialGeneral,
}

def fetch_election_dates(year):
	# Yields the FEC's election date records for federal elections in year.
	page = 1
	while True:
		ret = query_json_api(OPENFEC_API + "/election-dates/", {
			"api_key": settings.FEC_API_KEY,
			"election_year": year,
			"per_page": 100,
			"page": page,
		})
		for result in ret.get("results", []):
			yield result
		if page >= ret.get("pagination", {}).get("pages", 1):
			break
		page += 1

@transaction.atomic
def update_election_dates(year, records=None):
	# Stores the earliest date of each type of election in each state.
	# Returns the number of ElectionDate records written.
	if records is None:
		records = fetch_election_dates(year)

	earliest = { }
	for r in records:
		election_type = ELECTION_TYPES.get(r.get("election_type_id"))
		if election_type is None or not r.get("election_state") or not r.get("election_date"):
			continue
		key = (r["election_state"], election_type.value)
		d = dateutil.parser.parse(r["election_date"]).date()
		if key not in earliest or d < earliest[key][0]:
			earliest[key] = (d, r)

	for (state, election_type), (d, r) in sorted(earliest.items()):
		ElectionDate.objects.update_or_create(
			state=state, election_year=year, election_type=election_type,
			defaults={ "date": d, "extra": r })

	logger.info("Stored %d election dates for %d.", len(earliest), year)
	return len(earliest)

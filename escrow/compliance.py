# Donor compliance classification.
# --------------------------------
#
# This is the one canonical statement of what makes a donor "compliant"
# (fully identified per FEC record-keeping rules) versus a "guest". It
# has no dependencies so that it can be evaluated anywhere, and any
# other rendition of it (e.g. a client-side pre-check) should be tested
# against escrow/contract/compliance_cases.json rather than maintained
# independently.

GUEST = "guest"
COMPLIANT = "compliant"

# Ordered from lowest to highest. A donor's stored tier only ever moves
# to the right in this list.
TIER_NAMES = (GUEST, COMPLIANT)

# Values of the country field that mean the donor lives in the United States.
DOMESTIC_COUNTRIES = ("domestic", "United States")

def _filled(profile, field):
	value = profile.get(field)
	if value is None:
		return False
	return str(value).strip() != ""

def classify(profile):
	# profile is a mapping of donor fields. Returns GUEST or COMPLIANT.

	gave_full_name = _filled(profile, "first_name") and _filled(profile, "last_name")

	gave_address = len(str(profile.get("zip") or "").strip()) >= 5 \
		and _filled(profile, "city") \
		and _filled(profile, "state") \
		and _filled(profile, "address")

	# Foreign donors must give a passport or other foreign ID instead.
	gave_residency = profile.get("country") in DOMESTIC_COUNTRIES \
		or _filled(profile, "passport")

	# If the donor isn't employed there's nothing more to say. If they
	# are, both occupation and employer are required.
	gave_employment = not profile.get("is_employed") \
		or (_filled(profile, "occupation") and _filled(profile, "employer"))

	if gave_full_name and gave_address and gave_residency and gave_employment:
		return COMPLIANT
	return GUEST

def tier_rank(tier):
	try:
		return TIER_NAMES.index(tier)
	except ValueError:
		raise ValueError("%s is not a compliance tier." % repr(tier))

def ratchet(stored, computed):
	# The stored tier never decreases: return whichever of the two is higher.
	if stored is None:
		return computed
	if tier_rank(computed) > tier_rank(stored):
		return computed
	return stored

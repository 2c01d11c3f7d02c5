from django.contrib.auth import get_user_model
from django.test import TestCase

from powerback.models import DonorProfile, ComplianceTier
from powerback.utils import canonical_json, jsonable

import datetime, decimal

PROFILE = {
	"first_name": "Ada",
	"last_name": "Lovelace",
	"address": "12 Fir St",
	"city": "Rudy",
	"state": "AR",
	"zip": "72952",
	"country": "domestic",
	"is_employed": False,
}

class DonorProfileTestCase(TestCase):
	def setUp(self):
		self.user = get_user_model().objects.create(username="donor", email="donor@example.com")

	def test_new_profile_is_guest(self):
		profile = DonorProfile.update_for(self.user, first_name="Ada")
		self.assertEqual(profile.compliance, ComplianceTier.Guest)

	def test_promotion(self):
		profile = DonorProfile.update_for(self.user, **PROFILE)
		self.assertEqual(profile.compliance, ComplianceTier.Compliant)

	def test_never_demoted(self):
		DonorProfile.update_for(self.user, **PROFILE)

		# Clearing a required field doesn't take the tier away.
		profile = DonorProfile.update_for(self.user, zip="")
		self.assertEqual(profile.zip, "")
		self.assertEqual(profile.compliance, ComplianceTier.Compliant)

		# Nor does writing a lower tier directly.
		profile.compliance = ComplianceTier.Guest
		profile.save()
		self.assertEqual(DonorProfile.objects.get(id=profile.id).compliance, ComplianceTier.Compliant)

		profile.compliance = ComplianceTier.Guest
		profile.save(update_fields=['compliance'])
		self.assertEqual(DonorProfile.objects.get(id=profile.id).compliance, ComplianceTier.Compliant)

	def test_employment_required_when_employed(self):
		profile = DonorProfile.update_for(self.user, **dict(PROFILE, is_employed=True))
		self.assertEqual(profile.compliance, ComplianceTier.Guest)
		profile = DonorProfile.update_for(self.user, occupation="Engineer", employer="Analytical Co")
		self.assertEqual(profile.compliance, ComplianceTier.Compliant)

	def test_not_a_profile_field(self):
		with self.assertRaises(ValueError):
			DonorProfile.update_for(self.user, compliance="compliant")

class JSONTestCase(TestCase):
	def test_canonical_json(self):
		self.assertEqual(canonical_json({ "b": 1, "a": [1, 2] }), '{"a":[1,2],"b":1}')
		self.assertEqual(jsonable({ "amount": decimal.Decimal("41.46"), "on": datetime.date(2026, 3, 3) }),
			{ "amount": "41.46", "on": "2026-03-03" })

from django.db import models, transaction
from django.conf import settings

from escrow import compliance

class ComplianceTier(models.TextChoices):
	Guest = compliance.GUEST
	Compliant = compliance.COMPLIANT

class DonorProfile(models.Model):
	"""The identifying information a donor has given us. The compliance field is the donor's stored tier, which never goes down."""

	user = models.OneToOneField(settings.AUTH_USER_MODEL, related_name="donor_profile", on_delete=models.CASCADE)

	first_name = models.CharField(max_length=64, blank=True)
	last_name = models.CharField(max_length=64, blank=True)
	address = models.CharField(max_length=128, blank=True)
	city = models.CharField(max_length=64, blank=True)
	state = models.CharField(max_length=2, blank=True)
	zip = models.CharField(max_length=10, blank=True)
	country = models.CharField(max_length=64, default="domestic", help_text="'domestic' for US residents, otherwise the donor's country.")
	passport = models.CharField(max_length=64, blank=True, help_text="A passport or other foreign ID number, required of donors living abroad.")

	is_employed = models.BooleanField(default=False)
	occupation = models.CharField(max_length=64, blank=True)
	employer = models.CharField(max_length=64, blank=True)

	compliance = models.CharField(max_length=16, choices=ComplianceTier.choices, default=ComplianceTier.Guest, help_text="The donor's compliance tier. Only ever promoted.")

	created = models.DateTimeField(auto_now_add=True)
	updated = models.DateTimeField(auto_now=True)

	# The fields the compliance classifier looks at. These are what gets
	# snapshotted onto each Celebration.
	COMPLIANCE_FIELDS = ('first_name', 'last_name', 'address', 'city', 'state', 'zip', 'country', 'passport', 'is_employed', 'occupation', 'employer')

	def __str__(self):
		return "%s (%s)" % (self.user, self.compliance)

	def as_compliance_fields(self):
		return { k: getattr(self, k) for k in DonorProfile.COMPLIANCE_FIELDS }

	def classify(self):
		return compliance.classify(self.as_compliance_fields())

	def save(self, *args, **kwargs):
		# Recompute the tier from the profile fields, but never write a tier
		# lower than what is already stored.
		stored = None
		if self.id:
			stored = DonorProfile.objects.filter(id=self.id).values_list('compliance', flat=True).first()
		self.compliance = compliance.ratchet(stored, compliance.ratchet(self.compliance, self.classify()))
		if kwargs.get('update_fields') is not None and 'compliance' not in kwargs['update_fields']:
			kwargs['update_fields'] = list(kwargs['update_fields']) + ['compliance']
		super(DonorProfile, self).save(*args, **kwargs)

	@staticmethod
	@transaction.atomic
	def update_for(user, **fields):
		# Update the user's profile under a row lock so that concurrent edits
		# can't race the ratchet. Returns the saved profile.
		profile, _ = DonorProfile.objects.select_for_update().get_or_create(user=user)
		for k, v in fields.items():
			if k not in DonorProfile.COMPLIANCE_FIELDS:
				raise ValueError("%s is not a profile field." % k)
			setattr(profile, k, v)
		profile.save()
		return profile

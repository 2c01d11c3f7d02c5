# Bring the account models into this module so Django finds them.
from powerback.accounts import ComplianceTier, DonorProfile

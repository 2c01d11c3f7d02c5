import decimal
import logging

import requests

from django.conf import settings

from escrow.payments import PaymentAPIClient, HumanReadableValidationError, DummyPaymentAPIClient
from escrow.errors import ValidationError, PaymentCaptureFailedError
from escrow.models import CaptureStatus

logger = logging.getLogger(__name__)

# Make a singleton instance of the payment client.
if settings.PAYMENTS_API:
	PaymentAPI = PaymentAPIClient(
		settings.PAYMENTS_API['api_baseurl'],
		settings.PAYMENTS_API['secret_key'],
		timeout=settings.PAYMENTS_API.get('timeout', 20),
		max_retries=settings.PAYMENTS_API.get('max_retries', 3),
		)
else:
	# Testing only, obviously!
	logger.warning("Using DummyPaymentAPI!!")
	PaymentAPI = DummyPaymentAPIClient()

def compute_fee(amount):
	# The processor's fee on a charge of amount, which we pass on to the
	# donor. Rounded to the cent.
	fees = settings.ESCROW_FEES
	fee = decimal.Decimal(amount) * decimal.Decimal(fees["percent"]) + decimal.Decimal(fees["fixed"])
	return fee.quantize(decimal.Decimal('0.01'), rounding=decimal.ROUND_HALF_UP)

def authorize_celebration(amount, metadata, idempotency_key, payment_method=None):
	# Places a hold for amount on the donor's card. The processor
	# de-duplicates on the idempotency key, so retrying a create with the
	# same key never results in a second hold.
	try:
		return PaymentAPI.authorize(amount, metadata, idempotency_key, payment_method=payment_method)
	except HumanReadableValidationError as e:
		# e.g. a declined card
		raise ValidationError(str(e))

def capture_celebration(celebration):
	# Captures the held funds. Returns (CaptureStatus, record) where status
	# is Confirmed or Pending. Raises PaymentCaptureFailedError if the
	# processor said no.
	#
	# A timeout means we don't know whether the capture happened. That's
	# Pending, and the processor's webhook will tell us.
	idempotency_key = "capture:" + celebration.idempotency_key
	try:
		ret = PaymentAPI.capture(celebration.authorization_id, idempotency_key)
	except requests.Timeout as e:
		logger.warning("Capture for celebration %d timed out: %s", celebration.id, e)
		return CaptureStatus.Pending, { "timeout": str(e) }
	except HumanReadableValidationError as e:
		raise PaymentCaptureFailedError(str(e), celebration.id)
	except IOError as e:
		raise PaymentCaptureFailedError("Payment API error: %s" % e, celebration.id)

	status = ret.get("status")
	if status == "succeeded":
		return CaptureStatus.Confirmed, ret
	if status in ("processing", "pending"):
		return CaptureStatus.Pending, ret
	raise PaymentCaptureFailedError("Capture %s returned status %s." % (ret.get("id"), status), celebration.id)

def parse_capture_event(event):
	# Picks out (authorization_id, succeeded, charge_id) from a webhook
	# event. Returns None for events we don't act on.
	event_type = event.get("type")
	if event_type not in ("capture.succeeded", "capture.failed"):
		return None
	data = event.get("data") or {}
	if not isinstance(data, dict):
		raise ValidationError("Capture event data must be an object.")
	if not data.get("authorization_id"):
		raise ValidationError("Capture event is missing an authorization_id.")
	return data["authorization_id"], (event_type == "capture.succeeded"), data.get("charge_id")

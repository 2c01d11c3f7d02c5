import decimal
import hashlib
import hmac
import json
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

class HumanReadableValidationError(Exception):
	pass

class PaymentAPIClient(object):
	"""A client for the card processor's authorize/capture API."""

	def __init__(self, api_baseurl, secret_key, timeout=20, max_retries=3, backoff_factor=0.5):
		self.api_baseurl = api_baseurl.rstrip("/")
		self.secret_key = secret_key
		self.timeout = timeout
		self.debug = False

		# Retry on connection errors and on the processor's transient
		# statuses, with exponential backoff. Every call that changes state
		# carries an idempotency key, so POSTs are retried too. Read
		# timeouts are not retried: the request may have gone through, and
		# the caller needs to know the outcome is unknown.
		retry = Retry(
			total=max_retries,
			read=0,
			backoff_factor=backoff_factor,
			status_forcelist=(429, 500, 502, 503, 504),
			allowed_methods=None,
			raise_on_status=False)
		self.session = requests.Session()
		self.session.mount("https://", HTTPAdapter(max_retries=retry))
		self.session.mount("http://", HTTPAdapter(max_retries=retry))

	def __call__(self, method, path, post_data=None, idempotency_key=None):
		url = self.api_baseurl + path

		headers = {
			"Authorization": "Bearer " + self.secret_key,
		}
		if idempotency_key:
			headers["Idempotency-Key"] = idempotency_key

		# Log requests. Definitely don't do this in production since we'll
		# have sensitive data here!
		if self.debug:
			print(method, url)
			if post_data:
				print(json.dumps(post_data, indent=True))
			print()

		# issue request (raises requests.Timeout on a timeout)
		r = self.session.request(
			method,
			url,
			json=post_data,
			headers=headers,
			timeout=self.timeout,
			)

		# raises exception on anything but 2xx
		try:
			r.raise_for_status()
		except requests.HTTPError:
			# The processor explains declines and bad requests in a message
			# we can show to people.
			if 400 <= r.status_code < 500:
				try:
					message = r.json()["error"]["message"]
				except (ValueError, KeyError, TypeError):
					message = None
				if message:
					raise HumanReadableValidationError(message)

			logger.error("%s %s failed: %s", method, url, r.content)
			raise IOError("Payment API failed: %d %s" % (r.status_code, url))

		return r.json()

	def authorize(self, amount, metadata, idempotency_key, payment_method=None):
		# Places a hold on the donor's card for amount (a Decimal, in
		# dollars) without moving any money.
		return self("POST", "/authorizations",
			post_data={
				"amount": self.to_cents(amount),
				"currency": "usd",
				"capture_method": "manual",
				"payment_method": payment_method,
				"metadata": metadata,
			},
			idempotency_key=idempotency_key)

	def capture(self, authorization_id, idempotency_key):
		# Returns the processor's capture record, whose status is
		# 'succeeded', 'processing' or 'failed'.
		return self("POST", "/authorizations/%s/capture" % authorization_id,
			idempotency_key=idempotency_key)

	@staticmethod
	def to_cents(value):
		# Amounts are sent to the processor as an integer number of cents.
		# Anything that isn't exactly a non-negative number of cents is a
		# bug on our end.
		if not isinstance(value, decimal.Decimal):
			value = decimal.Decimal(str(value))
		try:
			cents = value.quantize(decimal.Decimal('0.01'))
		except decimal.InvalidOperation:
			raise ValueError("Rounding issue with %s." % value)
		if cents != value:
			raise ValueError("Rounding issue with %s (not a whole number of cents)." % value)
		if cents < 0:
			raise ValueError("Rounding issue with %s (negative)." % value)
		return int(cents * 100)

	@staticmethod
	def sign_webhook(payload, secret):
		return hmac.new(secret.encode("utf8"), payload, hashlib.sha256).hexdigest()

	@staticmethod
	def verify_webhook_signature(payload, signature, secret):
		# payload is the raw request body (bytes).
		if not signature or not secret:
			return False
		expected = PaymentAPIClient.sign_webhook(payload, secret)
		return hmac.compare_digest(expected, signature)

class DummyPaymentAPIClient(object):
	"""A stand-in for the payment API for unit tests."""

	def __init__(self):
		self.authorizations = { } # authorization id => record
		self.keys = { } # idempotency key => authorization id
		self.captures = [] # (authorization id, idempotency key) of every capture call
		self.capture_outcomes = [] # queued outcomes for capture(): 'succeeded', 'processing', 'failed' or 'timeout'

	def authorize(self, amount, metadata, idempotency_key, payment_method=None):
		if idempotency_key in self.keys:
			return self.authorizations[self.keys[idempotency_key]]
		auth = {
			"dummy_response": True,
			"id": "auth_dummy_%d" % (len(self.authorizations) + 1),
			"amount": self.to_cents(amount),
			"status": "requires_capture",
			"metadata": metadata,
		}
		self.authorizations[auth["id"]] = auth
		self.keys[idempotency_key] = auth["id"]
		return auth

	def capture(self, authorization_id, idempotency_key):
		self.captures.append((authorization_id, idempotency_key))
		if authorization_id not in self.authorizations:
			raise HumanReadableValidationError("No such authorization: %s" % authorization_id)
		auth = self.authorizations[authorization_id]

		outcome = self.capture_outcomes.pop(0) if self.capture_outcomes else "succeeded"
		if outcome == "timeout":
			raise requests.ReadTimeout("Dummy capture timed out.")
		if outcome == "failed":
			raise HumanReadableValidationError("Your card was declined.")

		if auth["status"] != "captured":
			auth["status"] = "captured" if outcome == "succeeded" else "processing"
		return {
			"dummy_response": True,
			"id": "ch_" + authorization_id,
			"authorization": authorization_id,
			"status": "succeeded" if auth["status"] == "captured" else "processing",
		}

	@staticmethod
	def to_cents(value):
		return PaymentAPIClient.to_cents(value)

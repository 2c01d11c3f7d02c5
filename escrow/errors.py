class EscrowError(Exception):
	pass

class ValidationError(EscrowError, ValueError):
	# Malformed or unacceptable input. Raised before anything is persisted.
	pass

class LimitExceededError(ValidationError):
	def __init__(self, message, remaining_limit, limit=None, reset_date=None, kind="donation"):
		super(LimitExceededError, self).__init__(message)
		self.remaining_limit = remaining_limit
		self.limit = limit
		self.reset_date = reset_date
		self.kind = kind

class DuplicateRequestError(EscrowError):
	# An idempotency key was seen before. Carries the record that was
	# created the first time so that the caller can return it.
	def __init__(self, existing):
		super(DuplicateRequestError, self).__init__("Idempotency key %s was already used." % existing.idempotency_key)
		self.existing = existing

class InvalidTransitionError(EscrowError):
	pass

class StaleStateError(EscrowError):
	# Another actor changed the record's status first.
	def __init__(self, celebration_id, expected_status, actual_status=None):
		super(StaleStateError, self).__init__("Celebration %s is no longer %s%s." % (
			celebration_id, expected_status,
			(" (now %s)" % actual_status) if actual_status else ""))
		self.celebration_id = celebration_id
		self.expected_status = expected_status
		self.actual_status = actual_status

class PaymentCaptureFailedError(EscrowError):
	# The processor declined or errored on capture. Retryable; the
	# celebration's status was not changed.
	def __init__(self, message, celebration_id=None):
		super(PaymentCaptureFailedError, self).__init__(message)
		self.celebration_id = celebration_id

class NotFoundError(EscrowError, LookupError):
	pass

class LedgerIntegrityError(EscrowError):
	pass

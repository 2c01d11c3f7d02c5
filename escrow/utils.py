from django.http import HttpResponse
from django.conf import settings

from functools import wraps
import datetime, decimal, json, logging

import requests

from escrow.errors import EscrowError, LimitExceededError, NotFoundError, InvalidTransitionError, StaleStateError, ValidationError

logger = logging.getLogger(__name__)

def query_json_api(base_url, params={}, timeout=30):
	# GETs a JSON API. Raises IOError on any HTTP failure.
	r = requests.get(base_url, params=params, timeout=timeout, headers={ "Accept": "application/json" })
	try:
		r.raise_for_status()
	except requests.HTTPError:
		raise IOError("%s returned %d." % (base_url, r.status_code))
	return r.json()

class JSONEncoder(json.JSONEncoder):
	def default(self, o):
		if isinstance(o, decimal.Decimal):
			return float(o)
		if isinstance(o, (datetime.datetime, datetime.date)):
			return o.isoformat()
		return super(JSONEncoder, self).default(o)

def build_json_httpresponse(obj, status=200):
	ret = json.dumps(obj, cls=JSONEncoder, sort_keys=True, indent=2)
	resp = HttpResponse(ret, content_type="application/json", status=status)
	resp["Content-Length"] = len(ret)
	return resp

def error_response(e):
	# Maps an escrow exception to an HTTP status and a JSON body.
	body = { "status": "fail", "error": type(e).__name__, "msg": str(e) }
	if isinstance(e, LimitExceededError):
		body.update({
			"status": "limit-exceeded",
			"remaining_limit": e.remaining_limit,
			"limit": e.limit,
			"reset_date": e.reset_date,
			"kind": e.kind,
		})
		return build_json_httpresponse(body, status=403)
	if isinstance(e, NotFoundError):
		return build_json_httpresponse(body, status=404)
	if isinstance(e, (InvalidTransitionError, StaleStateError)):
		return build_json_httpresponse(body, status=409)
	if isinstance(e, (ValidationError, ValueError)):
		return build_json_httpresponse(body, status=400)
	return build_json_httpresponse(body, status=500)

def json_response(f):
	"""A decorator for views that turns JSON-serializable output into a JSON response."""

	@wraps(f)
	def g(*args, **kwargs):
		try:
			# Call the wrapped view.
			ret = f(*args, **kwargs)

			# If it returns a HttpResponse, pass it through unchanged.
			if isinstance(ret, HttpResponse):
				return ret

			# Return a JSON response.
			return build_json_httpresponse(ret)

		# Catch known errors.
		except (EscrowError, ValueError) as e:
			logger.info("%s: %s", type(e).__name__, e)
			return error_response(e)

	return g

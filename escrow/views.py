from django.views.decorators.http import require_http_methods
from django.views.decorators.csrf import csrf_exempt
from django.http import HttpResponse, HttpResponseForbidden
from django.conf import settings

from escrow import lifecycle, trigger, bizlogic
from escrow.errors import NotFoundError, ValidationError
from escrow.models import Bill, Celebration
from escrow.payments import PaymentAPIClient
from escrow.utils import json_response, build_json_httpresponse

import json
import logging

logger = logging.getLogger(__name__)

def celebration_json(c, with_ledger=False):
	ret = {
		"id": c.id,
		"bill": c.bill.bill_id,
		"candidate_id": c.candidate_id,
		"candidate_name": c.candidate_name,
		"candidate_state": c.candidate_state,
		"donation": c.donation,
		"tip": c.tip,
		"fee": c.fee,
		"idempotency_key": c.idempotency_key,
		"current_status": c.current_status,
		"resolved": c.resolved,
		"paused": c.paused,
		"defunct": c.defunct,
		"capture_status": c.capture_status,
		"created": c.created,
		"resolved_at": c.resolved_at,
		"defunct_at": c.defunct_at,
		"defunct_reason": c.defunct_reason,
	}
	if with_ledger:
		ret["ledger"] = [
			{
				"sequence": e.sequence,
				"previous_status": e.previous_status,
				"new_status": e.new_status,
				"timestamp": e.timestamp,
				"reason": e.reason,
				"triggered_by": e.triggered_by,
			}
			for e in c.ledger()
		]
	return ret

def get_request_data(request, json_only=False):
	# The UI posts JSON. Forms work too, except where json_only.
	if request.content_type == "application/json" or json_only:
		try:
			data = json.loads(request.body.decode("utf8"))
		except ValueError:
			raise ValidationError("The request body is not valid JSON.")
		if not isinstance(data, dict):
			raise ValidationError("The request body must be a JSON object.")
		return data
	return request.POST

def not_logged_in():
	return build_json_httpresponse({ "status": "fail", "msg": "You must be logged in." }, status=401)

def get_own_celebration(request, celebration_id):
	c = Celebration.objects.filter(id=celebration_id, donor=request.user).first()
	if c is None:
		raise NotFoundError("There is no celebration with id %s." % celebration_id)
	return c

@require_http_methods(['GET', 'POST'])
@json_response
def celebrations(request):
	if not request.user.is_authenticated:
		return not_logged_in()

	if request.method == "GET":
		return {
			"celebrations": [celebration_json(c) for c in lifecycle.store.find(donor=request.user).select_related('bill')],
		}

	data = get_request_data(request)
	key = request.headers.get("Idempotency-Key") or data.get("idempotency_key")
	if not data.get("bill"):
		raise ValidationError("A bill is required.")

	c = lifecycle.create(
		request.user,
		lifecycle.find_bill(data["bill"]),
		data.get("candidate_id"),
		data.get("candidate_state"),
		data.get("donation"),
		key,
		tip=data.get("tip") or 0,
		candidate_name=data.get("candidate_name") or "",
		payment_method=data.get("payment_method"))
	return { "status": "ok", "celebration": celebration_json(c) }

@require_http_methods(['GET'])
@json_response
def celebration(request, celebration_id):
	if not request.user.is_authenticated:
		return not_logged_in()
	return celebration_json(get_own_celebration(request, celebration_id), with_ledger=True)

@require_http_methods(['POST'])
@json_response
def pause_celebration(request, celebration_id):
	if not request.user.is_authenticated:
		return not_logged_in()
	c = lifecycle.pause(get_own_celebration(request, celebration_id).id)
	return { "status": "ok", "celebration": celebration_json(c) }

@require_http_methods(['POST'])
@json_response
def resume_celebration(request, celebration_id):
	if not request.user.is_authenticated:
		return not_logged_in()
	c = lifecycle.resume(get_own_celebration(request, celebration_id).id)
	return { "status": "ok", "celebration": celebration_json(c) }

@require_http_methods(['GET'])
@json_response
def limits(request):
	if not request.user.is_authenticated:
		return not_logged_in()
	return lifecycle.donor_limits(
		request.user,
		candidate_id=request.GET.get("candidate") or None,
		candidate_state=request.GET.get("state") or None)

@require_http_methods(['POST'])
@json_response
def resolve_bill(request, bill_id):
	# Internal: operators fire a bill's trigger by hand.
	if not request.user.is_authenticated or not request.user.is_staff:
		return HttpResponseForbidden()
	report = trigger.resolve_bill(lifecycle.find_bill(bill_id))
	return { "status": "ok" if report.ok else "partial", "report": report.to_dict() }

@csrf_exempt
@require_http_methods(['POST'])
@json_response
def payments_webhook(request):
	# The processor tells us how captures turned out. This is the
	# authoritative word on whether money moved.
	if not PaymentAPIClient.verify_webhook_signature(request.body, request.headers.get("X-Signature"), settings.PAYMENTS_WEBHOOK_SECRET):
		logger.warning("Rejected a payments webhook with a bad signature.")
		return HttpResponseForbidden()

	event = get_request_data(request, json_only=True)
	parsed = bizlogic.parse_capture_event(event)
	if parsed is None:
		return { "status": "ignored" }

	authorization_id, succeeded, charge_id = parsed
	c = lifecycle.reconcile_capture(authorization_id, succeeded, charge_id)
	return { "status": "ok", "celebration": c.id, "current_status": c.current_status }

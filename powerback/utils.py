import json

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models

class JSONField(models.JSONField):
	# Stores Decimals and dates (as strings) instead of failing on them.
	def __init__(self, *args, **kwargs):
		kwargs.setdefault("encoder", DjangoJSONEncoder)
		super(JSONField, self).__init__(*args, **kwargs)

def canonical_json(data):
	# A stable serialization used for hashing and comparing records.
	return json.dumps(data, sort_keys=True, separators=(",", ":"), cls=DjangoJSONEncoder)

def jsonable(data):
	# Round-trip through JSON so that what we hold in memory is exactly
	# what a JSONField will give back after a database read.
	return json.loads(canonical_json(data))


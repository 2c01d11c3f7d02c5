# Checks every celebration's status ledger.
# -----------------------------------------

from django.core.management.base import BaseCommand, CommandError

from escrow.models import Celebration
from escrow.errors import LedgerIntegrityError

import sys, tqdm

class Command(BaseCommand):
	help = 'Verifies the hash chain and replayed status of every celebration\'s ledger.'

	def handle(self, *args, **options):
		celebrations = Celebration.objects.order_by('id')
		if sys.stdout.isatty(): celebrations = tqdm.tqdm(celebrations, total=celebrations.count())

		bad = 0
		for c in celebrations:
			try:
				c.verify_ledger()
			except LedgerIntegrityError as e:
				print(e)
				bad += 1

		if bad:
			raise CommandError("%d celebrations failed verification." % bad)

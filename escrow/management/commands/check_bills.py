# Resolves celebrations on bills whose trigger condition has been met.
# ---------------------------------------------------------------------

from django.core.management.base import BaseCommand

from escrow.models import Bill, BillStatus
from escrow.legislative import trigger_condition_met
from escrow.trigger import resolve_bill
from escrow.taskutils import exclusive_process

import sys, tqdm

class Command(BaseCommand):
	help = 'Polls Congress.gov for each open bill and resolves celebrations on bills that have moved.'

	def handle(self, *args, **options):
		# Ensure this process does not run concurrently.
		exclusive_process('powerback-check-bills')

		bills = list(Bill.objects.filter(status=BillStatus.Open).order_by('bill_id'))
		if sys.stdout.isatty(): bills = tqdm.tqdm(bills)
		for bill in bills:
			# A failure to reach the API for one bill shouldn't hold up the rest.
			try:
				when = trigger_condition_met(bill)
			except IOError as e:
				print(bill, e, file=sys.stderr)
				continue
			if when is None:
				continue

			bill.mark_triggered(when=when)
			report = resolve_bill(bill)
			print(bill, report)

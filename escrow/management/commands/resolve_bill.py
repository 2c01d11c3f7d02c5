# Fire a bill's trigger by hand.
# ------------------------------

from django.core.management.base import BaseCommand, CommandError

from escrow.models import Bill
from escrow.trigger import resolve_bill

class Command(BaseCommand):
	help = 'Marks a bill triggered and resolves every open celebration on it.'

	def add_arguments(self, parser):
		parser.add_argument('bill_id', help="A bill ID like hjres54-119.")
		parser.add_argument('--workers', type=int, default=None, help="How many celebrations to resolve at once.")

	def handle(self, *args, **options):
		bill = Bill.objects.filter(bill_id=options['bill_id']).first()
		if bill is None:
			raise CommandError("There is no bill %s." % options['bill_id'])

		report = resolve_bill(bill, max_workers=options['workers'])

		# Show what happened.
		print(bill, report)
		for celebration_id, error in sorted(report.failures.items()):
			print(celebration_id, error)

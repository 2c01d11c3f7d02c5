# Adds a bill that celebrations can be made on.
# ---------------------------------------------

from django.core.management.base import BaseCommand, CommandError

from escrow.legislative import create_bill

class Command(BaseCommand):
	help = 'Creates a Bill from its Congress.gov record so that donors can make celebrations on it.'

	def add_arguments(self, parser):
		parser.add_argument('bill_id', help="A bill ID like hjres54-119.")
		parser.add_argument('--trigger-action-type', action='append', dest='trigger_action_types', help="A Congress.gov action type that meets the trigger condition. Repeatable. Defaults to floor actions.")

	def handle(self, *args, **options):
		try:
			bill = create_bill(options['bill_id'])
		except (ValueError, IOError) as e:
			raise CommandError(str(e))

		if options['trigger_action_types']:
			bill.extra["trigger_action_types"] = options['trigger_action_types']
			bill.save(update_fields=['extra'])

		print(bill, bill.title)

# Retries resolution of open celebrations on triggered bills.
# ------------------------------------------------------------

from django.core.management.base import BaseCommand

from escrow.trigger import retry_unresolved
from escrow.taskutils import exclusive_process

class Command(BaseCommand):
	help = 'Retries capturing funds for celebrations a previous resolution run could not finish.'

	def add_arguments(self, parser):
		parser.add_argument('--include-pending', action='store_true', help="Also retry captures still waiting on the payment processor's webhook.")
		parser.add_argument('--workers', type=int, default=None)

	def handle(self, *args, **options):
		# Ensure this process does not run concurrently.
		exclusive_process('powerback-resolve-celebrations')

		report = retry_unresolved(max_workers=options['workers'], include_pending=options['include_pending'])
		print(report)
		for celebration_id, error in sorted(report.failures.items()):
			print(celebration_id, error)

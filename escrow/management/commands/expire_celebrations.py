# Makes celebrations defunct when their bill's Congress has ended.
# ----------------------------------------------------------------

from django.core.management.base import BaseCommand
from django.utils import timezone

from escrow.trigger import expire_ended_sessions
from escrow.taskutils import exclusive_process

class Command(BaseCommand):
	help = 'Vacates bills whose Congress ended without the trigger condition being met, and makes their celebrations defunct.'

	def handle(self, *args, **options):
		# Ensure this process does not run concurrently.
		exclusive_process('powerback-expire-celebrations')

		for report in expire_ended_sessions(timezone.localdate()):
			print(report.bill, "%d celebrations made defunct" % len(report.resolved))
			for celebration_id, error in sorted(report.failures.items()):
				print(celebration_id, error)

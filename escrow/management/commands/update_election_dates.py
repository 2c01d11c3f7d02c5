# Loads primary and general election dates from the FEC.
# ------------------------------------------------------

from django.core.management.base import BaseCommand
from django.utils import timezone

from escrow.cycles import election_year_for
from escrow.fec import update_election_dates

class Command(BaseCommand):
	help = 'Loads state primary and general election dates for an election year from OpenFEC.'

	def add_arguments(self, parser):
		parser.add_argument('year', nargs='?', type=int, help="The election year. Defaults to the current cycle's.")

	def handle(self, *args, **options):
		year = options['year'] or election_year_for(timezone.localdate())
		count = update_election_dates(year)
		print("%d election dates stored for %d." % (count, year))

#!/usr/bin/env python3
import os
import sys

if __name__ == "__main__":
	os.environ.setdefault("DJANGO_SETTINGS_MODULE", "powerback.settings")

	from django.core.management import execute_from_command_line

	if sys.stderr.isatty():
		# Interactive: just run the command.
		execute_from_command_line(sys.argv)
	else:
		# From cron (check_bills, resolve_celebrations, expire_celebrations).
		# A failure there means celebrations may be stuck, so mail it to
		# ADMINS the way the site mails errors from requests.
		import logging
		class AdminEmailHandler(logging.Handler):
			def emit(self, record):
				from shlex import quote
				from django.core.mail import mail_admins
				subject = ("%s: %s" % (" ".join(quote(arg) for arg in sys.argv), record.getMessage()))[:989]
				mail_admins(subject, self.format(record), fail_silently=True)
		logger = logging.getLogger('management_command')
		logger.addHandler(AdminEmailHandler())

		try:
			execute_from_command_line(sys.argv)
		except Exception as e:
			logger.error(repr(e), exc_info=sys.exc_info())
			raise

# Utilities for long-running tasks.
###################################

import atexit
import errno
import os
import os.path
import sys

def exclusive_process(name):
	# Ensure that this process, globally named `name`, does not run more
	# than once at a time. Exits if another live process holds the name.

	piddir = '/var/run' if os.access('/var/run', os.W_OK) else '/tmp'
	pidfile = os.path.join(piddir, '%s.pid' % name)
	mypid = os.getpid()

	# Lock this module's file so the check below is itself serialized.
	with open(__file__, 'r+') as flock:
		os.lockf(flock.fileno(), os.F_LOCK, 0)

		try:
			with open(pidfile, 'x') as f:
				# No other process.
				f.write(str(mypid))
				atexit.register(clear_my_pid, pidfile)
				return

		except FileExistsError:
			with open(pidfile, 'r+') as f:
				try:
					existing_pid = int(f.read().strip())
				except ValueError:
					existing_pid = None

				if existing_pid and is_pid_valid(existing_pid):
					print("Another %s process is already running (pid %d)." % (name, existing_pid), file=sys.stderr)
					sys.exit(1)

				# Stale. Take it over.
				f.seek(0)
				f.write(str(mypid))
				f.truncate()
				atexit.register(clear_my_pid, pidfile)

def clear_my_pid(pidfile):
	os.unlink(pidfile)

def is_pid_valid(pid):
	"""Checks whether pid is the ID of a currently running process."""
	if pid <= 0: raise ValueError('Invalid PID.')
	try:
		os.kill(pid, 0)
	except OSError as err:
		if err.errno == errno.ESRCH: # No such process
			return False
		elif err.errno == errno.EPERM: # Not permitted to send signal
			return True
		else: # EINVAL
			raise
	return True

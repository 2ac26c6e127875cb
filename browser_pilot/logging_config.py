import locale
import logging
import sys

from dotenv import load_dotenv

load_dotenv()

from browser_pilot.config import CONFIG
from browser_pilot.timing import now_utc_iso, process_start_utc_iso, uptime_seconds

RESULT_LEVEL = 35

THIRD_PARTY_LOGGERS = (
	'httpx',
	'httpcore',
	'playwright',
	'asyncio',
	'google_genai',
	'google_genai.models',
	'websockets',
)


def addLoggingLevel(levelName, levelNum, methodName=None):
	"""Register ``levelName`` on the logging module and logger class.

	Raises AttributeError if the level or method name is already taken.
	"""
	if not methodName:
		methodName = levelName.lower()

	if hasattr(logging, levelName):
		raise AttributeError(f'{levelName} already defined in logging module')
	if hasattr(logging, methodName):
		raise AttributeError(f'{methodName} already defined in logging module')
	if hasattr(logging.getLoggerClass(), methodName):
		raise AttributeError(f'{methodName} already defined in logger class')

	def logForLevel(self, message, *args, **kwargs):
		if self.isEnabledFor(levelNum):
			self._log(levelNum, message, args, **kwargs)

	def logToRoot(message, *args, **kwargs):
		logging.log(levelNum, message, *args, **kwargs)

	logging.addLevelName(levelNum, levelName)
	setattr(logging, levelName, levelNum)
	setattr(logging.getLoggerClass(), methodName, logForLevel)
	setattr(logging, methodName, logToRoot)


class SafeStreamHandler(logging.StreamHandler):
	"""Stream handler that degrades emoji to '?' on consoles that cannot encode them."""

	def emit(self, record):  # type: ignore[override]
		try:
			msg = self.format(record)
			stream = self.stream
			try:
				stream.write(msg + self.terminator)
			except UnicodeEncodeError:
				enc = getattr(stream, 'encoding', None) or locale.getpreferredencoding(False) or 'utf-8'
				stream.write(msg.encode(enc, errors='replace').decode(enc, errors='replace') + self.terminator)
			self.flush()
		except Exception:
			self.handleError(record)


class TaskContextFormatter(logging.Formatter):
	"""Adds ``utc``, ``uptime`` and a ``task`` tag to every record.

	Records logged through ``task_log`` carry ``task_id``/``turn`` extras and render
	as ``[task-0193… #3]``; everything else gets an empty tag.
	"""

	def format(self, record):
		record.utc = now_utc_iso()
		record.uptime = f'{uptime_seconds():.3f}s'
		task_id = getattr(record, 'task_id', None)
		turn = getattr(record, 'turn', None)
		if task_id:
			record.task = f'[{task_id[:13]}… #{turn}] ' if turn is not None else f'[{task_id[:13]}…] '
		else:
			record.task = ''
		return super().format(record)


def setup_logging(stream=None, log_level=None, force_setup=False):
	"""Configure the ``browser_pilot`` logger.

	Levels come from ``BROWSER_PILOT_LOGGING_LEVEL`` (debug, info or result) unless
	``log_level`` is given. When the host already configured the root logger this is
	a no-op unless ``force_setup`` is set.
	"""
	try:
		addLoggingLevel('RESULT', RESULT_LEVEL)
	except AttributeError:
		pass  # already registered

	log_type = log_level or CONFIG.BROWSER_PILOT_LOGGING_LEVEL

	if logging.getLogger().hasHandlers() and not force_setup:
		return logging.getLogger('browser_pilot')

	root = logging.getLogger()
	root.handlers = []

	console = SafeStreamHandler(stream or sys.stdout)
	if log_type == 'result':
		console.setLevel('RESULT')
		console.setFormatter(TaskContextFormatter('%(message)s'))
	else:
		console.setFormatter(
			TaskContextFormatter('%(levelname)-8s [%(name)s] %(utc)s (+%(uptime)s) %(task)s%(message)s')
		)
	root.addHandler(console)

	levels = {'result': RESULT_LEVEL, 'debug': logging.DEBUG}
	root.setLevel(levels.get(log_type, logging.INFO))

	pilot_logger = logging.getLogger('browser_pilot')
	pilot_logger.propagate = False
	pilot_logger.handlers = [console]
	pilot_logger.setLevel(root.level)
	pilot_logger.debug(f'Logging initialized at {now_utc_iso()} (process_start={process_start_utc_iso()})')

	for logger_name in THIRD_PARTY_LOGGERS:
		third_party = logging.getLogger(logger_name)
		third_party.setLevel(logging.ERROR)
		third_party.propagate = False

	return pilot_logger

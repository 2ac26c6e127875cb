import logging

from browser_pilot.config import CONFIG
from browser_pilot.logging_config import setup_logging

# Only set up logging if not explicitly disabled (e.g. when embedded in a host app)
if CONFIG.BROWSER_PILOT_SETUP_LOGGING:
	logger = setup_logging()
else:
	logger = logging.getLogger('browser_pilot')


# --- Lightweight, lazy re-exports ---
# Avoid importing playwright / google-genai at package import time.

_LAZY_EXPORTS = {
	# Agent core
	'AgentService': ('browser_pilot.agent.service', 'AgentService'),
	'AgentOrchestrator': ('browser_pilot.agent.orchestrator', 'AgentOrchestrator'),
	'StateManager': ('browser_pilot.agent.state_manager', 'StateManager'),
	'EventBus': ('browser_pilot.agent.events', 'EventBus'),
	'AgentAction': ('browser_pilot.agent.views', 'AgentAction'),
	'TaskState': ('browser_pilot.agent.views', 'TaskState'),
	# Configuration
	'Settings': ('browser_pilot.config', 'Settings'),
	'AgentConfig': ('browser_pilot.config', 'AgentConfig'),
	# Browser
	'BrowserSession': ('browser_pilot.browser.session', 'BrowserSession'),
	'PageResolver': ('browser_pilot.browser.resolver', 'PageResolver'),
	# Controller
	'Controller': ('browser_pilot.controller.service', 'Controller'),
	'ActAfterObserveExecutor': ('browser_pilot.controller.executor', 'ActAfterObserveExecutor'),
	# Reasoning backends
	'GeminiComputerUseBackend': ('browser_pilot.llm.google.computer_use', 'GeminiComputerUseBackend'),
}


def __getattr__(name: str):
	entry = _LAZY_EXPORTS.get(name)
	if not entry:
		raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
	module_path, attr_name = entry
	try:
		from importlib import import_module

		module = import_module(module_path)
		attr = getattr(module, attr_name)
		globals()[name] = attr
		return attr
	except ImportError as e:
		raise ImportError(f'Failed to import {name} from {module_path}: {e}') from e


__all__ = list(_LAZY_EXPORTS.keys())

from typing import TYPE_CHECKING

# Type stubs for lazy imports
if TYPE_CHECKING:
	from .resolver import PageResolver
	from .session import BrowserSession
	from .views import AutomationEngine, PageTab, TabHandle

# Lazy imports mapping so importing browser_pilot.browser does not start playwright
_LAZY_IMPORTS = {
	'BrowserSession': ('.session', 'BrowserSession'),
	'PageResolver': ('.resolver', 'PageResolver'),
	'AutomationEngine': ('.views', 'AutomationEngine'),
	'PageTab': ('.views', 'PageTab'),
	'TabHandle': ('.views', 'TabHandle'),
}


def __getattr__(name: str):
	"""Lazy import mechanism for browser components."""
	if name in _LAZY_IMPORTS:
		module_path, attr_name = _LAZY_IMPORTS[name]
		full_module_path = f'browser_pilot.browser{module_path}'
		try:
			from importlib import import_module

			module = import_module(full_module_path)
			attr = getattr(module, attr_name)
			globals()[name] = attr
			return attr
		except ImportError as e:
			raise ImportError(f'Failed to import {name} from {full_module_path}: {e}') from e

	raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = ['BrowserSession', 'PageResolver', 'AutomationEngine', 'PageTab', 'TabHandle']

import logging
import re
from typing import TYPE_CHECKING, Any

from browser_pilot.controller.views import ActResult, CandidateAction

if TYPE_CHECKING:
	from browser_pilot.browser.types import Page

# Enumerates visible interactive elements in the viewport with a stable xpath each.
INTERACTIVE_ELEMENTS_JS = """
(maxElements) => {
  const selectors = [
    'a[href]', 'button', 'input', 'textarea', 'select', 'summary',
    '[role="button"]', '[role="link"]', '[role="textbox"]', '[role="searchbox"]',
    '[role="checkbox"]', '[role="tab"]', '[role="menuitem"]', '[role="option"]',
    '[contenteditable="true"]', '[onclick]'
  ];
  const xpathFor = (el) => {
    if (el.id && document.querySelectorAll('#' + CSS.escape(el.id)).length === 1) {
      return `//*[@id="${el.id}"]`;
    }
    const parts = [];
    let node = el;
    while (node && node.nodeType === Node.ELEMENT_NODE) {
      let index = 1;
      let sibling = node.previousElementSibling;
      while (sibling) {
        if (sibling.nodeName === node.nodeName) index++;
        sibling = sibling.previousElementSibling;
      }
      parts.unshift(`${node.nodeName.toLowerCase()}[${index}]`);
      node = node.parentElement;
    }
    return '/' + parts.join('/');
  };
  const out = [];
  const seen = new Set();
  for (const el of document.querySelectorAll(selectors.join(','))) {
    if (out.length >= maxElements) break;
    if (seen.has(el)) continue;
    seen.add(el);
    const rect = el.getBoundingClientRect();
    if (rect.width === 0 || rect.height === 0) continue;
    if (rect.bottom < 0 || rect.top > window.innerHeight) continue;
    const style = window.getComputedStyle(el);
    if (style.visibility === 'hidden' || style.display === 'none') continue;
    out.push({
      xpath: xpathFor(el),
      tag: el.tagName.toLowerCase(),
      role: el.getAttribute('role') || '',
      type: el.getAttribute('type') || '',
      text: (el.innerText || el.textContent || '').trim().slice(0, 120),
      ariaLabel: el.getAttribute('aria-label') || '',
      placeholder: el.getAttribute('placeholder') || '',
      name: el.getAttribute('name') || '',
      title: el.getAttribute('title') || '',
      value: (typeof el.value === 'string' ? el.value : '').slice(0, 120),
      editable: el.isContentEditable === true,
    });
  }
  return out;
}
"""

_STOPWORDS = {
	'a', 'an', 'the', 'on', 'in', 'into', 'to', 'of', 'for', 'and', 'or', 'with', 'at', 'by', 'this', 'that',
	'click', 'press', 'tap', 'type', 'enter', 'fill', 'select', 'choose', 'hover', 'over', 'check', 'open',
	'button', 'link', 'field', 'input', 'box', 'please', 'then', 'page',
}

_QUOTED = re.compile(r'"([^"]+)"|\'([^\']+)\'|“([^”]+)”')

TEXT_INPUT_TYPES = {'', 'text', 'search', 'email', 'password', 'url', 'tel', 'number'}

SUPPORTED_METHODS = {'click', 'fill', 'type', 'press', 'hover', 'check', 'uncheck', 'select_option', 'dblclick'}


def _tokens(text: str) -> set[str]:
	return {t for t in re.findall(r'[a-z0-9]+', text.lower()) if t not in _STOPWORDS and len(t) > 1}


def _quoted_text(instruction: str) -> str | None:
	match = _QUOTED.search(instruction)
	if not match:
		return None
	return next(g for g in match.groups() if g)


def _is_text_entry(element: dict[str, Any]) -> bool:
	tag = element.get('tag')
	if tag == 'textarea' or element.get('editable'):
		return True
	if tag == 'input' and (element.get('type') or '').lower() in TEXT_INPUT_TYPES:
		return True
	return element.get('role') in ('textbox', 'searchbox')


def _describe(element: dict[str, Any]) -> str:
	label = element.get('ariaLabel') or element.get('text') or element.get('placeholder') or element.get('name') or element.get('title')
	role = element.get('role') or element.get('tag') or 'element'
	label = ' '.join(str(label or '').split())[:80]
	return f'{role} "{label}"' if label else role


class DomService:
	"""DOM-backed observe/act used by the automation engine.

	``observe`` enumerates visible interactive elements and ranks them against a
	natural-language instruction; ``act`` runs a candidate's method on the
	playwright locator for its selector.
	"""

	logger: logging.Logger

	def __init__(self, page: 'Page', logger: logging.Logger | None = None, max_elements: int = 300):
		self.page = page
		self.max_elements = max_elements
		self.logger = logger or logging.getLogger(__name__)

	async def _wait_for_page_stable(self) -> None:
		"""Best-effort wait to let the page settle before DOM indexing."""
		try:
			await self.page.wait_for_load_state('domcontentloaded', timeout=3_000)
		except Exception as e:
			self.logger.debug(f'domcontentloaded wait skipped: {type(e).__name__}: {e}')

	async def get_interactive_elements(self) -> list[dict[str, Any]]:
		await self._wait_for_page_stable()
		elements = await self.page.evaluate(INTERACTIVE_ELEMENTS_JS, self.max_elements)
		return list(elements or [])

	async def observe(self, instruction: str, max_candidates: int = 8) -> list[CandidateAction]:
		"""Return candidate actions for ``instruction``, best first. Empty when nothing matches."""
		elements = await self.get_interactive_elements()
		return self.rank_candidates(instruction, elements, max_candidates=max_candidates)

	@staticmethod
	def rank_candidates(instruction: str, elements: list[dict[str, Any]], max_candidates: int = 8) -> list[CandidateAction]:
		lowered = instruction.lower()
		quoted = _quoted_text(instruction)
		wants_text = quoted is not None and any(verb in lowered for verb in ('type', 'enter', 'fill', 'search', 'write'))
		wants_hover = 'hover' in lowered
		wants_select = 'select' in lowered or 'choose' in lowered

		wanted = _tokens(instruction if not wants_text else _QUOTED.sub(' ', instruction))
		if not wanted and quoted:
			wanted = _tokens(quoted)

		scored: list[CandidateAction] = []
		for element in elements:
			haystack = ' '.join(
				str(element.get(key) or '') for key in ('text', 'ariaLabel', 'placeholder', 'name', 'title', 'value')
			)
			element_tokens = _tokens(haystack) | _tokens(element.get('role') or '') | _tokens(element.get('tag') or '')
			overlap = len(wanted & element_tokens)
			text_entry = _is_text_entry(element)

			if wants_text and text_entry:
				overlap += 1
			if overlap == 0:
				continue

			if wants_text and text_entry:
				method, arguments = 'fill', [quoted or '']
			elif wants_select and element.get('tag') == 'select':
				method, arguments = 'select_option', [quoted] if quoted else []
			elif wants_hover:
				method, arguments = 'hover', []
			else:
				method, arguments = 'click', []

			score = overlap / max(len(wanted), 1)
			scored.append(
				CandidateAction(
					selector=f"xpath={element['xpath']}",
					description=f'{method} {_describe(element)}',
					method=method,
					arguments=arguments,
					score=round(score, 3),
				)
			)

		scored.sort(key=lambda c: c.score, reverse=True)
		return scored[:max_candidates]

	async def act(self, candidate: CandidateAction) -> ActResult:
		"""Execute ``candidate.method`` on its locator. Raises on playwright failure."""
		method = (candidate.method or 'click').lower()
		if method not in SUPPORTED_METHODS:
			return ActResult(
				success=False,
				message=f'Unsupported method: {method}',
				action_description=candidate.description,
				actions=[candidate],
				error=f'Unsupported method: {method}',
			)

		locator = self.page.locator(candidate.selector)
		if await locator.count() == 0:
			raise LookupError(f'No element found for selector "{candidate.selector}"')
		target = locator.first

		self.logger.debug(f'🖱️ {method} on {candidate.selector} args={candidate.arguments}')
		if method == 'fill':
			await target.fill(candidate.arguments[0] if candidate.arguments else '')
		elif method == 'type':
			await target.press_sequentially(candidate.arguments[0] if candidate.arguments else '')
		elif method == 'press':
			await target.press(candidate.arguments[0] if candidate.arguments else 'Enter')
		elif method == 'select_option':
			await target.select_option(candidate.arguments[0] if candidate.arguments else None)
		else:
			await getattr(target, method)()

		return ActResult(
			success=True,
			message=f'Action [{method}] performed on selector: {candidate.selector}',
			action_description=candidate.description,
			actions=[candidate],
		)

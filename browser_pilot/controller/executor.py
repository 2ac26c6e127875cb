import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

from browser_pilot.controller.views import ActResult, CandidateAction
from browser_pilot.exceptions import ActionFailedError, error_message

if TYPE_CHECKING:
    from browser_pilot.browser.types import Page
    from browser_pilot.browser.views import AutomationEngine

logger = logging.getLogger(__name__)

PageSupplier = Callable[[], Awaitable['Page']]

DOM_CLICK_JS = """
(sel) => {
  let el = null;
  if (sel.startsWith('xpath=')) {
    const result = document.evaluate(sel.slice('xpath='.length), document, null, XPathResult.FIRST_ORDERED_NODE_TYPE, null);
    el = result.singleNodeValue;
  } else {
    el = document.querySelector(sel);
  }
  if (!el) throw new Error(`No element found for selector: ${sel}`);
  el.click();
  return true;
}
"""


class ActStrategy:
    """One step of the act-after-observe fallback chain."""

    name = 'strategy'

    async def attempt(self) -> ActResult:
        raise NotImplementedError


class DomClickStrategy(ActStrategy):
    name = 'dom_click'

    def __init__(self, executor: 'ActAfterObserveExecutor', candidate: CandidateAction):
        self.executor = executor
        self.candidate = candidate

    async def attempt(self) -> ActResult:
        await self.executor.dom_click(self.candidate.selector)
        return ActResult(
            success=True,
            message=f'DOM click executed on selector: {self.candidate.selector}',
            action_description=self.candidate.description,
            actions=[self.candidate],
        )


class EngineActCandidateStrategy(ActStrategy):
    name = 'engine_act_candidate'

    def __init__(self, executor: 'ActAfterObserveExecutor', candidate: CandidateAction):
        self.executor = executor
        self.candidate = candidate

    async def attempt(self) -> ActResult:
        return await self.executor.act(self.candidate)


class RawInstructionStrategy(ActStrategy):
    name = 'raw_instruction'

    def __init__(self, executor: 'ActAfterObserveExecutor', instruction: str):
        self.executor = executor
        self.instruction = instruction

    async def attempt(self) -> ActResult:
        return await self.executor.act(self.instruction)


class ActAfterObserveExecutor:
    """
    Observe-then-act with an ordered fallback chain.

    ``act_after_observe`` observes candidates for an instruction and walks the
    strategies built from the outcome until one succeeds:

    1. DOM click on the top candidate (only when it is a click with a selector)
    2. engine-level act on the top candidate
    3. engine-level act on the raw instruction (only when observe found nothing or raised)

    Every failed step is logged with its cause; the failures are joined into the
    returned ``ActResult.error`` when the whole chain fails.
    """

    def __init__(
        self,
        engine: 'AutomationEngine',
        page_supplier: Optional[PageSupplier] = None,
        max_candidates: int = 8,
    ):
        self.engine = engine
        self.page_supplier = page_supplier
        self.max_candidates = max_candidates
        self._page: Optional['Page'] = None

    def set_page(self, page: 'Page') -> None:
        self._page = page

    def clear_page_cache(self) -> None:
        self._page = None

    async def get_page(self) -> 'Page':
        if self._page is not None:
            return self._page
        if self.page_supplier is None:
            raise RuntimeError('No page available for act executor')
        self._page = await self.page_supplier()
        return self._page

    async def observe(self, instruction: str) -> list[CandidateAction]:
        """Candidate actions for ``instruction``. Raises on engine failure."""
        page = await self.get_page()
        candidates = await self.engine.observe(instruction, page)
        return list(candidates or [])[: self.max_candidates]

    async def act(self, instruction_or_candidate: Union[str, CandidateAction]) -> ActResult:
        """Engine-level act. Never raises: failures come back as an unsuccessful ActResult."""
        description = (
            instruction_or_candidate
            if isinstance(instruction_or_candidate, str)
            else instruction_or_candidate.description
        )
        try:
            page = await self.get_page()
            return await self.engine.act(instruction_or_candidate, page)
        except Exception as e:
            message = error_message(e)
            logger.error(f'❌ Act failed: {type(e).__name__}: {message}')
            return ActResult(success=False, message=message, action_description=description, error=message)

    async def dom_click(self, selector: str) -> None:
        page = await self.get_page()
        await page.evaluate(DOM_CLICK_JS, selector)

    def build_strategies(
        self,
        instruction: str,
        candidates: list[CandidateAction],
    ) -> list[ActStrategy]:
        if not candidates:
            return [RawInstructionStrategy(self, instruction)]
        first = candidates[0]
        strategies: list[ActStrategy] = []
        if first.is_click:
            strategies.append(DomClickStrategy(self, first))
        strategies.append(EngineActCandidateStrategy(self, first))
        return strategies

    async def act_after_observe(self, instruction: str) -> ActResult:
        try:
            candidates = await self.observe(instruction)
            if candidates:
                logger.info(f'👀 Executing observed action: {candidates[0].description}')
            else:
                logger.warning(f'⚠️ No actions observed, executing instruction directly: {instruction}')
        except Exception as e:
            logger.warning(f'⚠️ Observe failed, falling back to direct act: {instruction} ({type(e).__name__}: {e})')
            candidates = []

        strategies = self.build_strategies(instruction, candidates)
        failures: list[str] = []
        last: Optional[ActResult] = None
        for index, strategy in enumerate(strategies):
            try:
                result = await strategy.attempt()
            except Exception as e:
                result = ActResult(success=False, message=error_message(e), action_description=instruction, error=error_message(e))

            if result.success:
                if failures:
                    logger.info(f'✅ {strategy.name} succeeded after {len(failures)} fallback(s)')
                return result

            cause = result.error or result.message or 'unknown error'
            failures.append(f'{strategy.name}: {cause}')
            last = result
            if index < len(strategies) - 1:
                logger.warning(f'⚠️ {strategy.name} failed, falling back to {strategies[index + 1].name}: {cause}')

        if last is None:
            raise ActionFailedError(f'No act strategy available for: {instruction}')
        return ActResult(
            success=False,
            message=last.message,
            action_description=last.action_description or instruction,
            actions=last.actions,
            error='\n'.join(failures),
        )

"""Linear dashboard workflow: Search, Review, Outreach Setup, Calling."""

from typing import Awaitable, Callable, Iterable, List, Optional

from pydantic import BaseModel

from .logging_utils import get_logger
from .models import Lead, WorkflowStage, WorkflowState, utcnow

logger = get_logger(__name__)


class TransitionResult(BaseModel):
    """Outcome of a requested stage change.

    ``empty_state`` is set when Review was requested without any leads; the
    machine stays where it was and the caller shows an empty-state prompt.
    """

    stage: WorkflowStage
    requested: WorkflowStage
    changed: bool = False
    empty_state: bool = False
    message: Optional[str] = None

    @property
    def entered(self) -> bool:
        return self.stage == self.requested


class WorkflowStateMachine:
    """Track the current stage and the lead selection.

    Forward moves go one stage at a time; any earlier stage can be revisited.
    Stage changes are reported through ``on_change`` so they can be
    persisted; re-entering the current stage reports nothing.
    """

    def __init__(
        self,
        lead_count: Callable[[], int],
        state: Optional[WorkflowState] = None,
        on_change: Optional[Callable[[WorkflowState], Awaitable[None]]] = None,
    ):
        self._lead_count = lead_count
        self._state = state.model_copy(deep=True) if state else WorkflowState()
        self._on_change = on_change

    @property
    def stage(self) -> WorkflowStage:
        return self._state.stage

    @property
    def state(self) -> WorkflowState:
        return self._state.model_copy(deep=True)

    @property
    def selected_ids(self) -> List[str]:
        return list(self._state.selected_lead_ids)

    async def go_to(self, stage: WorkflowStage) -> TransitionResult:
        """Move to ``stage``.

        Raises:
            ValueError: If ``stage`` skips ahead more than one stage.
        """
        stage = WorkflowStage(stage)
        current = self._state.stage

        if stage == current:
            return TransitionResult(stage=current, requested=stage)

        if stage > current + 1:
            raise ValueError(
                f"Cannot jump from stage {current.name} to {stage.name}"
            )

        if stage == WorkflowStage.REVIEW and self._lead_count() == 0:
            logger.info("Review requested with no leads, showing empty state")
            return TransitionResult(
                stage=current,
                requested=stage,
                empty_state=True,
                message="No leads yet. Run a search to start reviewing prospects.",
            )

        self._state.stage = stage
        logger.info(f"Workflow moved from {current.name} to {stage.name}")
        await self._changed()
        return TransitionResult(stage=stage, requested=stage, changed=True)

    async def advance(self) -> TransitionResult:
        if self._state.stage == WorkflowStage.CALLING:
            return TransitionResult(stage=self.stage, requested=self.stage)
        return await self.go_to(WorkflowStage(self._state.stage + 1))

    async def rewind(self) -> TransitionResult:
        if self._state.stage == WorkflowStage.SEARCH:
            return TransitionResult(stage=self.stage, requested=self.stage)
        return await self.go_to(WorkflowStage(self._state.stage - 1))

    async def select(self, lead_ids: Iterable[str]) -> None:
        """Replace the selection (order preserved, duplicates dropped)."""
        self._state.selected_lead_ids = list(dict.fromkeys(lead_ids))
        await self._changed()

    async def clear_selection(self) -> None:
        await self.select([])

    def operative_leads(self, leads: List[Lead]) -> List[Lead]:
        """Leads the Outreach Setup and Calling stages work on.

        The selection when it matches at least one lead, otherwise all leads.
        """
        selected = set(self._state.selected_lead_ids)
        if selected:
            chosen = [lead for lead in leads if lead.id in selected]
            if chosen:
                return chosen
        return list(leads)

    def restore(self, state: WorkflowState) -> None:
        """Adopt a persisted state; a leadless Review+ stage falls back to Search."""
        self._state = state.model_copy(deep=True)
        if self._state.stage > WorkflowStage.SEARCH and self._lead_count() == 0:
            self._state.stage = WorkflowStage.SEARCH

    def reset(self) -> None:
        self._state = WorkflowState()

    async def _changed(self) -> None:
        self._state.last_saved_at = utcnow()
        if self._on_change is not None:
            await self._on_change(self.state)

"""Auto-apply engine: write extracted code actions to disk, one at a time."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from ..errors import CorexError, FileAccessError, MalformedPatch, PatchTargetMismatch
from ..tools.files import FileStore
from .code_actions import ActionKind, CodeAction
from .context_store import ContextStore

logger = logging.getLogger(__name__)

OpenFileFn = Callable[[str], Awaitable[None]]
IndexFileFn = Callable[[str, str], Awaitable[None]]


@dataclass
class ApplyOutcome:
    action: CodeAction
    success: bool
    message: str
    error: CorexError | None = None


def apply_patch(original: str, search: str, replace: str, file_path: str) -> str:
    """Replace the first verbatim occurrence of ``search``. Raises PatchTargetMismatch."""
    if not search or search not in original:
        raise PatchTargetMismatch(file_path)
    return original.replace(search, replace, 1)


class AutoApplyEngine:
    """Applies actions sequentially in the order given.

    A failing action never stops the ones after it. Every outcome is appended to
    the context store as a system turn so the model sees what happened.
    """

    def __init__(
        self,
        files: FileStore,
        store: ContextStore | None = None,
        open_file: OpenFileFn | None = None,
        index_file: IndexFileFn | None = None,
    ) -> None:
        self.files = files
        self.store = store
        self.open_file = open_file
        self.index_file = index_file

    async def _notify_editor(self, path: str, content: str) -> None:
        if self.open_file is not None:
            try:
                await self.open_file(path)
            except Exception:
                logger.warning("Editor failed to open %s", path, exc_info=True)
        if self.index_file is not None:
            try:
                await self.index_file(path, content)
            except Exception:
                logger.warning("Indexer failed for %s", path, exc_info=True)

    async def _apply_one(self, action: CodeAction) -> ApplyOutcome:
        name = action.display_name
        try:
            if action.kind == ActionKind.PATCH:
                if action.patch is None:
                    raise MalformedPatch(action.file_path)
                original = await self.files.read(action.file_path)
                new_content = apply_patch(original, action.patch.search, action.patch.replace, action.file_path)
                await self.files.write(action.file_path, new_content)
                message = f"✅ Patch applied to **{name}**."
            else:
                new_content = action.content
                await self.files.write(action.file_path, new_content)
                verb = "updated" if action.kind == ActionKind.MODIFY else "created"
                message = f"✅ **{name}** {verb}."
        except (PatchTargetMismatch, MalformedPatch) as e:
            logger.warning("Patch not applied to %s: %s", action.file_path, e)
            return ApplyOutcome(action, False, f"❌ Auto-apply failed ({action.file_path}): {e}", e)
        except FileAccessError as e:
            logger.warning("Auto-apply file error: %s", e)
            return ApplyOutcome(action, False, f"❌ Auto-apply failed ({action.file_path}): {e.message}", e)

        await self._notify_editor(action.file_path, new_content)
        return ApplyOutcome(action, True, message)

    async def apply(self, actions: Sequence[CodeAction]) -> list[ApplyOutcome]:
        outcomes: list[ApplyOutcome] = []
        for action in actions:
            outcome = await self._apply_one(action)
            outcomes.append(outcome)
            if self.store is not None:
                self.store.append("system", outcome.message, kind="outcome")
        applied = sum(1 for o in outcomes if o.success)
        if outcomes:
            logger.info("Auto-applied %d/%d code actions", applied, len(outcomes))
        return outcomes

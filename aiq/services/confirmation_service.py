from __future__ import annotations

import asyncio
import inspect
import logging

from aiq.ui.base import UserInterface

logger = logging.getLogger(__name__)


class ConfirmationService:
    """Asks the user to approve a high-risk call.

    Anything other than an explicit yes is a decline: the user saying no,
    EOF or Ctrl-C at the prompt, and cancellation of the waiting task.
    """

    def __init__(self, ui: UserInterface) -> None:
        self.ui = ui

    async def ask(self, question: str) -> bool:
        try:
            answer = self.ui.confirm(question)
            if inspect.isawaitable(answer):
                answer = await answer
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            logger.info("confirmation cancelled; treating as decline")
            return False
        except (EOFError, KeyboardInterrupt):
            logger.info("confirmation aborted; treating as decline")
            return False
        return bool(answer)

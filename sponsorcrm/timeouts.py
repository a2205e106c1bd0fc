"""
Course "premier de {opération, minuteur} gagne".

Le perdant est abandonné, jamais tué : son résultat tardif est simplement
ignoré par l'appelant (compteur de génération côté store / session).
"""
import asyncio
import logging
from typing import Awaitable, Optional, Tuple

logger = logging.getLogger(__name__)

DONE = "done"
TIMEOUT = "timeout"
INTERRUPTED = "interrupted"


def abandon(task: asyncio.Future) -> None:
    """
    Laisse la tâche finir seule ; son éventuelle exception est consommée
    pour ne pas polluer la boucle ("exception was never retrieved").
    """
    def _consume(t: asyncio.Future) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.debug("Résultat tardif ignoré (erreur): %r", exc)
        else:
            logger.debug("Résultat tardif ignoré")

    task.add_done_callback(_consume)


async def race(
    operation: Awaitable,
    timeout: float,
    interrupt: Optional[asyncio.Event] = None,
) -> Tuple[str, asyncio.Future]:
    """
    Retourne (issue, tâche). Si l'issue est DONE, `tâche.result()` donne la
    valeur (ou relève l'exception de l'opération).
    """
    task = asyncio.ensure_future(operation)
    waiters = {task}
    stopper = None
    if interrupt is not None:
        stopper = asyncio.ensure_future(interrupt.wait())
        waiters.add(stopper)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        if stopper is not None:
            stopper.cancel()

    if task in done:
        return DONE, task

    abandon(task)
    if stopper is not None and stopper in done:
        return INTERRUPTED, task
    return TIMEOUT, task

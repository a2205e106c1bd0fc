"""
Garde de session : bloque les vues protégées tant qu'aucune session n'est
établie, et distingue "en cours de chargement" d'un backend qui ne répond
plus (base en pause, réseau coupé...).

    INITIALIZING --session--> AUTHENTICATED
    INITIALIZING --null-----> UNAUTHENTICATED
    INITIALIZING --timeout/erreur--> UNREACHABLE (sortie par retry() seulement)
    AUTHENTICATED <--notification--> UNAUTHENTICATED
"""
import asyncio
import inspect
import logging
from functools import partial
from typing import Any, Callable, List, Optional, Set

from .config import get_settings
from .database import IdentityProvider, SessionSubscription
from .timeouts import INTERRUPTED, TIMEOUT, race

logger = logging.getLogger(__name__)


class SessionState:
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    UNREACHABLE = "unreachable"


StateListener = Callable[[str, Optional[Any]], Any]


class SessionGuard:
    def __init__(self, identity: IdentityProvider, timeout: Optional[float] = None):
        self.identity = identity
        self.timeout = timeout if timeout is not None else get_settings().session_timeout

        self.state = SessionState.INITIALIZING
        self.session: Optional[Any] = None

        self._attempt = 0
        self._closed = False
        self._settled = asyncio.Event()
        self._subscription: Optional[SessionSubscription] = None
        self._listeners: List[StateListener] = []
        self._tasks: Set[asyncio.Future] = set()

    @property
    def user(self) -> Optional[Any]:
        return getattr(self.session, "user", None)

    @property
    def loading(self) -> bool:
        return self.state == SessionState.INITIALIZING

    @property
    def authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set(self, state: str, session: Optional[Any]) -> None:
        changed = state != self.state or session is not self.session
        self.state = state
        self.session = session
        if not changed:
            return
        logger.info("Sessão: %s", state)
        for listener in list(self._listeners):
            try:
                result = listener(state, session)
            except Exception:
                logger.exception("Listener de sessão em erro")
                continue
            if inspect.isawaitable(result):
                # Les listeners asynchrones (ex: démarrage du store) tournent à part
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Listener de sessão em erro: %s", task.exception())

    async def start(self) -> str:
        """
        Lance en parallèle la lecture de la session et le minuteur.
        Le premier arrivé gagne ; le perdant est ignoré.
        """
        self._unsubscribe()
        self._attempt += 1
        attempt = self._attempt
        self._closed = False
        self._settled = asyncio.Event()
        self._set(SessionState.INITIALIZING, None)

        self._subscription = self.identity.on_session_change(
            partial(self._on_change, attempt)
        )

        outcome, task = await race(
            self.identity.get_current_session(), self.timeout, interrupt=self._settled
        )

        if attempt != self._attempt or self._closed:
            return self.state
        if outcome == INTERRUPTED or self._settled.is_set():
            # Une notification a déjà tranché : le minuteur est caduc
            return self.state
        if outcome == TIMEOUT:
            logger.error(
                "Auth timeout: sem resposta em %.0fs. Banco pode estar pausado.",
                self.timeout,
            )
            self._set(SessionState.UNREACHABLE, None)
            return self.state

        try:
            session = task.result()
        except Exception as e:
            logger.error("Verificação de sessão falhou: %s", e)
            self._set(SessionState.UNREACHABLE, None)
            return self.state

        if session:
            self._set(SessionState.AUTHENTICATED, session)
        else:
            self._set(SessionState.UNAUTHENTICATED, None)
        return self.state

    async def retry(self) -> str:
        """Seule sortie de UNREACHABLE : nouvelle tentative explicite."""
        return await self.start()

    def _on_change(self, attempt: int, session: Optional[Any]) -> None:
        if attempt != self._attempt or self._closed:
            return
        if self.state == SessionState.UNREACHABLE:
            logger.info("Notificação de sessão ignorada: aguardando nova tentativa")
            return
        self._settled.set()
        if session:
            self._set(SessionState.AUTHENTICATED, session)
        else:
            self._set(SessionState.UNAUTHENTICATED, None)

    async def sign_in(self, email: str, password: str) -> Optional[Any]:
        # L'état suit la notification du fournisseur, pas ce retour
        return await self.identity.sign_in(email, password)

    async def sign_out(self) -> None:
        await self.identity.sign_out()

    def _unsubscribe(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def wait_listeners(self) -> None:
        """Attend la fin des listeners asynchrones déjà lancés."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        self._attempt += 1
        self._unsubscribe()
        await self.wait_listeners()

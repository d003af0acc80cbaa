"""Canal de notifications entre les services et l'application hôte."""
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

EVENT_GENERATION_PROGRESS = "shotgunContextGenerationProgress"
EVENT_CONTEXT_GENERATED = "shotgunContextGenerated"
EVENT_CONTEXT_ERROR = "shotgunContextError"
EVENT_CONTEXT_CANCELLED = "shotgunContextCancelled"
EVENT_FILES_CHANGED = "projectFilesChanged"

ALL_EVENTS = (
    EVENT_GENERATION_PROGRESS,
    EVENT_CONTEXT_GENERATED,
    EVENT_CONTEXT_ERROR,
    EVENT_CONTEXT_CANCELLED,
    EVENT_FILES_CHANGED,
)

Listener = Callable[[Any], None]


class EventEmitter:
    """
    Diffuseur d'événements en mémoire.

    Les écouteurs sont appelés de manière synchrone dans le thread émetteur.
    Une erreur dans un écouteur est journalisée et n'empêche pas les autres
    de recevoir l'événement.
    """

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event_name: str, listener: Listener) -> Listener:
        with self._lock:
            self._listeners[event_name].append(listener)
        return listener

    def off(self, event_name: str, listener: Listener):
        with self._lock:
            if listener in self._listeners.get(event_name, []):
                self._listeners[event_name].remove(listener)

    def on_all(self, listener: Callable[[str, Any], None]):
        """Abonne un écouteur (event_name, payload) à tous les événements connus."""
        for event_name in ALL_EVENTS:
            self.on(event_name, lambda payload, name=event_name: listener(name, payload))

    def emit(self, event_name: str, payload: Any = None):
        with self._lock:
            listeners = list(self._listeners.get(event_name, []))
        if event_name != EVENT_GENERATION_PROGRESS:
            self.logger.debug(f"Événement {event_name} -> {len(listeners)} écouteur(s)")
        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                self.logger.error(f"Erreur dans un écouteur de '{event_name}': {e}", exc_info=True)

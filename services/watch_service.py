"""
Surveillance d'une racine de projet.

Un seul abonnement watchdog récursif couvre la racine; l'ensemble des
répertoires retenus est tenu à part et sert de filtre, de sorte que les
événements issus de répertoires ignorés ne sont jamais pris en compte. Les
événements bruts passent par une file et sont traités un par un par un
thread consommateur, sous le verrou de l'ensemble surveillé.
"""
import os
import queue
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from watchdog.events import (EVENT_TYPE_CLOSED, EVENT_TYPE_CLOSED_NO_WRITE, EVENT_TYPE_CREATED,
                             EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED, EVENT_TYPE_OPENED,
                             FileSystemEvent, FileSystemEventHandler)
from watchdog.observers import Observer

from .base_service import BaseService
from .event_emitter import EVENT_FILES_CHANGED, EventEmitter
from .exceptions import WatchServiceException
from .file_utils import is_within_root, to_relative_posix
from .ignore_rules import IgnoreRules

# Accès sans modification du contenu
ACCESS_ONLY_EVENT_TYPES = frozenset({EVENT_TYPE_OPENED, EVENT_TYPE_CLOSED, EVENT_TYPE_CLOSED_NO_WRITE})

_STOP = object()


class WatchState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    WATCHING = "watching"


class _QueueingEventHandler(FileSystemEventHandler):
    """Transmet les événements watchdog à la file du consommateur."""

    def __init__(self, event_queue: queue.Queue):
        super().__init__()
        self._queue = event_queue

    def on_any_event(self, event: FileSystemEvent):
        self._queue.put(event)


class WatchService(BaseService):
    """Maintient l'ensemble des répertoires surveillés et signale les changements."""

    def __init__(self, config: Optional[Dict[str, Any]], rules_provider: Callable[[str], IgnoreRules],
                 emitter: EventEmitter, logger: Optional[logging.Logger] = None,
                 observer_factory: Callable[[], Any] = Observer):
        """
        Args:
            config: Dictionnaire de configuration (event_poll_interval, stop_timeout)
            rules_provider: Retourne l'instantané de règles actives pour une racine
            emitter: Canal de notification des changements
            logger: Logger optionnel
            observer_factory: Fabrique d'observateurs watchdog
        """
        super().__init__(config, logger)
        self.rules_provider = rules_provider
        self.emitter = emitter
        self.observer_factory = observer_factory
        self._lock = threading.RLock()
        self._state = WatchState.STOPPED
        self._root_dir: Optional[str] = None
        self._rules = IgnoreRules.none()
        self._observer = None
        self._handler: Optional[_QueueingEventHandler] = None
        self._watches: Set[str] = set()
        self._event_queue: queue.Queue = queue.Queue()
        self._stop_event: Optional[threading.Event] = None
        self._consumer: Optional[threading.Thread] = None

    def validate_config(self):
        """Valide la configuration du service."""
        self.event_poll_interval = self.get_positive_number('event_poll_interval', 0.5)
        self.stop_timeout = self.get_positive_number('stop_timeout', 2.0)

    @property
    def state(self) -> WatchState:
        with self._lock:
            return self._state

    @property
    def is_watching(self) -> bool:
        return self.state == WatchState.WATCHING

    @property
    def root_dir(self) -> Optional[str]:
        with self._lock:
            return self._root_dir

    @property
    def watched_dirs(self) -> frozenset:
        with self._lock:
            return frozenset(self._watches)

    # --- Cycle de vie -------------------------------------------------------

    def start(self, root_dir: str):
        """
        Démarre la surveillance d'une racine, en arrêtant la précédente.

        Raises:
            WatchServiceException: Si la racine n'existe pas ou si l'observateur ne démarre pas
        """
        self.stop()
        if not root_dir:
            self.logger.info("Aucune racine fournie, surveillance non démarrée")
            return
        root = os.path.abspath(root_dir)
        if not os.path.isdir(root):
            raise WatchServiceException(f"Répertoire à surveiller introuvable: {root}")

        with self._lock:
            self._state = WatchState.STARTING
            self._root_dir = root
            self._rules = self.rules_provider(root)
            self._event_queue = queue.Queue()
            try:
                self._start_observer()
            except OSError as e:
                self._state = WatchState.STOPPED
                self._root_dir = None
                raise WatchServiceException(f"Impossible de démarrer la surveillance de {root}: {e}") from e
            self._register_tree(root)
            self._stop_event = threading.Event()
            self._consumer = threading.Thread(target=self._consume_events,
                                              args=(self._stop_event, self._event_queue),
                                              name="watch-consumer", daemon=True)
            self._consumer.start()
            self._state = WatchState.WATCHING
            self.logger.info(f"Surveillance démarrée pour {root} ({len(self._watches)} répertoires)")

    def stop(self):
        """Arrête la surveillance. Sans effet si elle n'est pas active."""
        with self._lock:
            if self._state == WatchState.STOPPED:
                return
            root = self._root_dir
            consumer = self._consumer
            if self._stop_event is not None:
                self._stop_event.set()
                self._event_queue.put(_STOP)
            self._stop_observer()
            self._root_dir = None
            self._rules = IgnoreRules.none()
            self._stop_event = None
            self._consumer = None
            self._state = WatchState.STOPPED
        if consumer is not None and consumer is not threading.current_thread():
            consumer.join(self.stop_timeout)
        self.logger.info(f"Surveillance arrêtée pour {root}")

    def refresh_ignores_and_rescan(self) -> bool:
        """
        Relit les règles actives et reconstruit l'ensemble surveillé.

        Returns:
            False si aucune surveillance n'est active
        """
        with self._lock:
            if self._state != WatchState.WATCHING or not self._root_dir:
                self.logger.debug("Rafraîchissement ignoré: aucune surveillance active")
                return False
            root = self._root_dir
            self._rules = self.rules_provider(root)
            self._watches = set()
            self._register_tree(root)
            self.logger.info(f"Règles rechargées pour {root} ({len(self._watches)} répertoires surveillés)")
        self.emitter.emit(EVENT_FILES_CHANGED, root)
        return True

    def _start_observer(self):
        # Un seul abonnement récursif par racine; l'ensemble surveillé sert de filtre
        self._handler = _QueueingEventHandler(self._event_queue)
        observer = self.observer_factory()
        observer.schedule(self._handler, self._root_dir, recursive=True)
        observer.start()
        self._observer = observer

    def _stop_observer(self):
        observer = self._observer
        self._observer = None
        self._watches = set()
        if observer is None:
            return
        observer.unschedule_all()
        observer.stop()
        if observer is not threading.current_thread():
            observer.join(self.stop_timeout)

    # --- Ensemble surveillé -------------------------------------------------

    def _register_tree(self, base_dir: str):
        """Ajoute `base_dir` et tous ses sous-répertoires retenus à l'ensemble surveillé (verrou détenu)."""
        root = self._root_dir

        def on_walk_error(error: OSError):
            self.logger.warning(f"Parcours impossible de {error.filename}, sous-arbre ignoré: {error}")

        for current, dirnames, _ in os.walk(base_dir, topdown=True, onerror=on_walk_error):
            self._watches.add(current)
            kept = []
            for name in sorted(dirnames):
                if name == '.git' and current == root:
                    continue
                rel_path = to_relative_posix(os.path.join(current, name), root)
                if self._rules.is_ignored(rel_path, is_dir=True):
                    self.logger.debug(f"Répertoire ignoré, non surveillé: {rel_path}")
                    continue
                kept.append(name)
            dirnames[:] = kept

    def _unsubscribe_tree(self, dir_path: str):
        prefix = dir_path.rstrip(os.sep) + os.sep
        for path in [p for p in self._watches if p == dir_path or p.startswith(prefix)]:
            self._watches.discard(path)
            self.logger.debug(f"Répertoire retiré de la surveillance: {path}")

    # --- Événements ---------------------------------------------------------

    def _consume_events(self, stop_event: threading.Event, event_queue: queue.Queue):
        while not stop_event.is_set():
            try:
                event = event_queue.get(timeout=self.event_poll_interval)
            except queue.Empty:
                continue
            if event is _STOP:
                break
            try:
                self.process_event(event)
            except Exception as e:
                self.logger.error(f"Erreur lors du traitement de l'événement {event!r}: {e}", exc_info=True)

    def _is_relevant(self, path: str, is_dir: bool) -> bool:
        if not path or not is_within_root(path, self._root_dir):
            return False
        abs_path = os.path.abspath(path)
        # Seuls comptent les événements dont le répertoire parent fait partie de l'ensemble surveillé
        if abs_path != self._root_dir and os.path.dirname(abs_path) not in self._watches:
            return False
        rel_path = to_relative_posix(abs_path, self._root_dir)
        return not self._rules.is_ignored_or_inside_ignored(rel_path, is_dir)

    def process_event(self, event: FileSystemEvent) -> bool:
        """
        Applique un événement à l'ensemble surveillé.

        Returns:
            True si une notification de changement a été émise
        """
        with self._lock:
            if self._state != WatchState.WATCHING or not self._root_dir:
                return False
            root = self._root_dir
            src_path = os.fsdecode(event.src_path)
            dest_path = os.fsdecode(getattr(event, 'dest_path', '') or '')

            src_relevant = self._is_relevant(src_path, event.is_directory)
            dest_relevant = bool(dest_path) and self._is_relevant(dest_path, event.is_directory)
            if not (src_relevant or dest_relevant):
                self.logger.debug(f"Événement ignoré: {event.event_type} {src_path}")
                return False

            event_type = event.event_type
            if event_type in (EVENT_TYPE_DELETED, EVENT_TYPE_MOVED):
                self._unsubscribe_tree(os.path.abspath(src_path))

            if event.is_directory:
                created_dir = None
                if event_type == EVENT_TYPE_CREATED and src_relevant:
                    created_dir = src_path
                elif event_type == EVENT_TYPE_MOVED and dest_relevant:
                    created_dir = dest_path
                if created_dir and os.path.isdir(created_dir):
                    self.logger.debug(f"Nouveau répertoire surveillé: {created_dir}")
                    self._register_tree(os.path.abspath(created_dir))

            notify = event_type not in ACCESS_ONLY_EVENT_TYPES and not (
                event.is_directory and event_type == EVENT_TYPE_MODIFIED)

        if notify:
            self.logger.debug(f"Changement détecté: {event_type} {src_path}")
            self.emitter.emit(EVENT_FILES_CHANGED, root)
        return notify

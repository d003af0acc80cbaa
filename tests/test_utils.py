#!/usr/bin/env python3
"""
Utilitaires partagés pour les tests.
"""

import threading
import time

from unittest.mock import MagicMock


def make_tree(root, structure):
    """
    Crée une arborescence de fichiers à partir d'un dictionnaire.

    Args:
        root (Path): Répertoire de base
        structure (dict): {nom: contenu str} pour un fichier, {nom: dict} pour un répertoire

    Examples:
        >>> make_tree(tmp_path, {"src": {"main.py": "print(1)"}, "README.md": "# r"})
    """
    root.mkdir(parents=True, exist_ok=True)
    for name, value in structure.items():
        path = root / name
        if isinstance(value, dict):
            make_tree(path, value)
        else:
            path.write_text(value, encoding='utf-8')
    return root


def wait_until(predicate, timeout=5.0, interval=0.02):
    """Attend qu'un prédicat devienne vrai; retourne sa dernière valeur."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class EventRecorder:
    """Enregistre toutes les notifications émises par un EventEmitter."""

    def __init__(self, emitter):
        self.events = []
        self._lock = threading.Lock()
        emitter.on_all(self._record)

    def _record(self, name, payload):
        with self._lock:
            self.events.append((name, payload))

    def names(self):
        with self._lock:
            return [name for name, _ in self.events]

    def payloads(self, name):
        with self._lock:
            return [payload for event_name, payload in self.events if event_name == name]

    def clear(self):
        with self._lock:
            self.events.clear()


class FakeObserver:
    """Observateur watchdog en mémoire: enregistre les abonnements sans toucher au noyau."""

    def __init__(self):
        self.scheduled = {}
        self.started = False
        self.stopped = False
        self.fail_paths = set()

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass

    def schedule(self, handler, path, recursive=False):
        if path in self.fail_paths:
            raise OSError(24, "inotify instance limit reached")
        watch = MagicMock(path=path, is_recursive=recursive)
        self.scheduled[path] = watch
        return watch

    def unschedule_all(self):
        self.scheduled.clear()

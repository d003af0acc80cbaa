# services/file_utils.py
"""
Utilitaires partagés pour le parcours des fichiers et la génération du contexte
"""
import os
import logging
import threading
from typing import Callable, List, Optional

from .exceptions import ContextTooLongException, OperationCancelledException

# Configuration du logger
logger = logging.getLogger(__name__)

# Connecteurs de l'arborescence texte
BRANCH = "├── "
LAST_BRANCH = "└── "
PIPE_PREFIX = "│   "
SPACE_PREFIX = "    "


class DirEntryInfo:
    """Entrée de répertoire figée au moment de la lecture."""

    __slots__ = ('name', 'path', 'is_dir')

    def __init__(self, name: str, path: str, is_dir: bool):
        self.name = name
        self.path = path
        self.is_dir = is_dir

    def __repr__(self):
        return f"DirEntryInfo({self.name!r}, is_dir={self.is_dir})"


def entry_sort_key(name: str, is_dir: bool):
    """Répertoires d'abord, puis nom insensible à la casse, puis nom exact."""
    return (not is_dir, name.lower(), name)


def list_directory(dir_path: str) -> List[DirEntryInfo]:
    """
    Lit un répertoire et retourne ses entrées triées.

    Les liens symboliques ne sont jamais considérés comme des répertoires,
    ce qui évite les boucles de parcours.

    Raises:
        OSError: Si le répertoire ne peut pas être lu
    """
    with os.scandir(dir_path) as it:
        entries = [DirEntryInfo(e.name, e.path, e.is_dir(follow_symlinks=False)) for e in it]
    entries.sort(key=lambda e: entry_sort_key(e.name, e.is_dir))
    return entries


def to_relative_posix(path: str, root_path: str) -> str:
    """Chemin relatif à la racine, au format POSIX ('.' pour la racine elle-même)."""
    rel = os.path.relpath(path, root_path)
    return '.' if rel == os.curdir else rel.replace(os.sep, '/')


def is_within_root(path: str, root_path: str) -> bool:
    rel = os.path.relpath(os.path.abspath(path), root_path)
    return rel != os.pardir and not rel.startswith(os.pardir + os.sep)


def check_cancelled(cancel_event: Optional[threading.Event], what: str = "operation"):
    """Lève OperationCancelledException si le jeton d'annulation est positionné."""
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledException(f"{what} cancelled")


def utf8_size(text: str) -> int:
    return len(text.encode('utf-8', errors='surrogatepass'))


class ProgressState:
    """
    Compteur de progression d'une génération.

    `processed_items` ne fait qu'augmenter; `total_items` est relevé si
    l'arborescence a grossi entre le comptage et le rendu.
    """

    def __init__(self, total_items: int = 0, callback: Optional[Callable[[int, int], None]] = None):
        self.processed_items = 0
        self.total_items = max(0, total_items)
        self._callback = callback

    def add_to_total(self, count: int):
        self.total_items += max(0, count)

    def advance(self, count: int = 1):
        self.processed_items += count
        if self.processed_items > self.total_items:
            self.total_items = self.processed_items
        if self._callback is not None:
            self._callback(self.processed_items, self.total_items)


class SizeBudget:
    """Comptabilité cumulative de la taille de sortie, en octets UTF-8."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self.used_bytes = 0

    def consume(self, text: str, where: str = ""):
        """
        Raises:
            ContextTooLongException: Si l'ajout dépasse la taille maximale
        """
        size = self.used_bytes + utf8_size(text)
        if size > self.max_bytes:
            location = f" ({where})" if where else ""
            logger.warning(f"Taille maximale du contexte dépassée{location}: {size} > {self.max_bytes} octets")
            raise ContextTooLongException(limit=self.max_bytes, size=size)
        self.used_bytes = size

    def checkpoint(self) -> int:
        return self.used_bytes

    def restore(self, checkpoint: int):
        self.used_bytes = checkpoint


class ArtifactBuffer:
    """Accumule l'arborescence et les blocs de fichiers d'une racine, sous un budget partagé."""

    def __init__(self, budget: SizeBudget):
        self.budget = budget
        self._tree_parts: List[str] = []
        self._content_parts: List[str] = []

    def write_tree(self, line: str):
        self.budget.consume(line, "arborescence")
        self._tree_parts.append(line)

    def write_content(self, block: str, relative_path: str):
        self.budget.consume(block, relative_path)
        self._content_parts.append(block)

    def render(self) -> str:
        tree = ''.join(self._tree_parts)
        if not self._content_parts:
            return tree
        # Le séparateur compense exactement le saut de ligne final retiré
        return tree + "\n" + ''.join(self._content_parts).rstrip("\n")


def estimate_tokens(text):
    """
    Estimates the number of tokens in a text.
    Uses a simple heuristic of 4 characters per token.
    """
    char_count = len(text)
    # Simple heuristic: on average 4 characters per token
    estimated_tokens = char_count / 4
    return char_count, estimated_tokens


def get_model_compatibility(tokens):
    """
    Returns information about model compatibility based on the estimated token count.
    """
    if tokens < 3500:
        return "Compatible with most models (~4k+ context)"
    elif tokens < 7000:
        return "Compatible with standard models (~8k+ context)"
    elif tokens < 14000:
        return "Compatible with ~16k+ context models"
    elif tokens < 28000:
        return "Compatible with ~32k+ context models"
    elif tokens < 100000:
        return "Compatible with large models (~128k+ context)"
    elif tokens < 180000:
        return "Compatible with very large models (~200k+ context)"
    else:
        return "Very large size (>180k tokens), requires specific models or context reduction"

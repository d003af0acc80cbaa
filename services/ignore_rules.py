"""
Règles d'exclusion au format .gitignore.

Deux ensembles de règles coexistent: celles du fichier .gitignore du projet
et les règles personnalisées globales. Ils ne sont jamais fusionnés, un
chemin est ignoré dès que l'un des deux le reconnaît.
"""
import logging
import os
import posixpath
from pathlib import Path
from typing import Optional, Tuple

import pathspec
from pathspec.patterns import GitWildMatchPattern

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_RULES_PATH = Path(__file__).with_name('ignore.glob')
ROOT_RELATIVE_PATH = '.'


def normalize_relative_path(relative_path: str) -> str:
    """Convertit un chemin relatif en chemin POSIX sans préfixe './'."""
    path = relative_path.replace(os.sep, '/')
    while path.startswith('./'):
        path = path[2:]
    return path or ROOT_RELATIVE_PATH


def normalize_user_path(relative_path: str) -> str:
    """Normalise un chemin relatif fourni par l'utilisateur (segments '.', '/' final)."""
    return normalize_relative_path(posixpath.normpath(relative_path.replace(os.sep, '/')))


class PatternSet:
    """Ensemble immuable de règles .gitignore compilées."""

    __slots__ = ('_spec', '_rule_count')

    def __init__(self, spec: Optional[pathspec.PathSpec] = None):
        self._spec = spec if spec is not None else pathspec.PathSpec([])
        # Les lignes vides et les commentaires produisent des motifs sans effet
        self._rule_count = sum(1 for p in self._spec.patterns if p.include is not None)

    @classmethod
    def empty(cls) -> 'PatternSet':
        return cls()

    @classmethod
    def try_compile(cls, rule_text: Optional[str]) -> Optional['PatternSet']:
        """
        Compile un texte de règles.

        Args:
            rule_text: Contenu au format .gitignore (une règle par ligne)

        Returns:
            Le PatternSet compilé, ou None si une règle est invalide
        """
        if not rule_text or not rule_text.strip():
            return cls.empty()
        lines = rule_text.replace('\r\n', '\n').split('\n')
        try:
            spec = pathspec.PathSpec.from_lines(GitWildMatchPattern, lines)
        except ValueError as e:
            logger.warning(f"Règles d'exclusion invalides: {e}")
            return None
        return cls(spec)

    @classmethod
    def compile(cls, rule_text: Optional[str]) -> 'PatternSet':
        """Compile un texte de règles; une entrée invalide donne un ensemble vide."""
        compiled = cls.try_compile(rule_text)
        return compiled if compiled is not None else cls.empty()

    @property
    def is_empty(self) -> bool:
        return self._rule_count == 0

    def __len__(self) -> int:
        return self._rule_count

    def matches(self, relative_path: str, is_dir: bool = False) -> bool:
        """
        Indique si un chemin relatif à la racine est reconnu par les règles.

        Args:
            relative_path: Chemin relatif à la racine du projet
            is_dir: True si le chemin désigne un répertoire

        Returns:
            True si le chemin est ignoré par cet ensemble
        """
        if self._rule_count == 0:
            return False
        path = normalize_relative_path(relative_path)
        if is_dir and path != ROOT_RELATIVE_PATH and not path.endswith('/'):
            # Les règles réservées aux répertoires ("build/") exigent le slash final
            path += '/'
        return self._spec.match_file(path)

    def __repr__(self):
        return f"PatternSet(rules={self._rule_count})"


class IgnoreRules:
    """
    Instantané immuable des règles actives pour une racine.

    Un emplacement à None signifie que l'ensemble correspondant est désactivé
    (ou absent, pour le .gitignore du projet).
    """

    __slots__ = ('gitignore', 'custom')

    def __init__(self, gitignore: Optional[PatternSet] = None, custom: Optional[PatternSet] = None):
        object.__setattr__(self, 'gitignore', gitignore)
        object.__setattr__(self, 'custom', custom)

    def __setattr__(self, name, value):
        raise AttributeError("IgnoreRules est immuable")

    @classmethod
    def none(cls) -> 'IgnoreRules':
        return cls()

    def evaluate(self, relative_path: str, is_dir: bool = False) -> Tuple[bool, bool]:
        """Retourne le couple (ignoré par .gitignore, ignoré par les règles personnalisées)."""
        if normalize_relative_path(relative_path) == ROOT_RELATIVE_PATH:
            # La racine n'est jamais exclue du parcours; seul l'indicateur personnalisé est affiché
            return False, bool(self.custom is not None and self.custom.matches(ROOT_RELATIVE_PATH, True))
        gitignored = self.gitignore is not None and self.gitignore.matches(relative_path, is_dir)
        custom_ignored = self.custom is not None and self.custom.matches(relative_path, is_dir)
        return gitignored, custom_ignored

    def is_ignored(self, relative_path: str, is_dir: bool = False) -> bool:
        if normalize_relative_path(relative_path) == ROOT_RELATIVE_PATH:
            return False
        return any(self.evaluate(relative_path, is_dir))

    def is_ignored_or_inside_ignored(self, relative_path: str, is_dir: bool = False) -> bool:
        """Vérifie le chemin et chacun de ses répertoires parents."""
        path = normalize_relative_path(relative_path)
        if path == ROOT_RELATIVE_PATH:
            return False
        parts = path.split('/')
        for depth in range(1, len(parts)):
            if self.is_ignored('/'.join(parts[:depth]), is_dir=True):
                return True
        return self.is_ignored(path, is_dir)

    def __repr__(self):
        return f"IgnoreRules(gitignore={self.gitignore!r}, custom={self.custom!r})"


def load_gitignore_file(root_path: str) -> Optional[PatternSet]:
    """
    Compile le fichier .gitignore situé à la racine du projet.

    Returns:
        Le PatternSet compilé, ou None si le fichier est absent ou illisible
    """
    gitignore_path = os.path.join(root_path, '.gitignore')
    if not os.path.isfile(gitignore_path):
        return None
    try:
        with open(gitignore_path, 'r', encoding='utf-8', errors='ignore') as f:
            content = f.read()
    except OSError as e:
        logger.warning(f"Impossible de lire {gitignore_path}: {e}")
        return None
    logger.debug(f".gitignore chargé depuis {gitignore_path}")
    return PatternSet.compile(content)


def load_default_custom_rules() -> str:
    """Lit les règles personnalisées embarquées avec le paquet."""
    try:
        return DEFAULT_IGNORE_RULES_PATH.read_text(encoding='utf-8')
    except OSError as e:
        logger.warning(f"Règles par défaut introuvables ({DEFAULT_IGNORE_RULES_PATH}): {e}")
        return ''

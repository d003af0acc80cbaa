import os
import logging
import threading
from typing import Dict, Any, Optional, List, Set

from .base_service import BaseService
from .exceptions import FileServiceException
from .file_utils import check_cancelled, list_directory, to_relative_posix
from .ignore_rules import IgnoreRules, PatternSet, load_gitignore_file


class TreeNode:
    """Nœud de l'arborescence présentée à l'interface."""

    def __init__(self, name: str, path: str, rel_path: str, is_dir: bool,
                 is_gitignored: bool = False, is_custom_ignored: bool = False,
                 children: Optional[List['TreeNode']] = None, project_id: Optional[str] = None):
        self.name = name
        self.path = path
        self.rel_path = rel_path
        self.is_dir = is_dir
        self.is_gitignored = is_gitignored
        self.is_custom_ignored = is_custom_ignored
        self.children = children
        self.project_id = project_id

    @property
    def is_ignored(self) -> bool:
        return self.is_gitignored or self.is_custom_ignored

    def to_dict(self) -> Dict[str, Any]:
        """Sérialise le nœud avec les clés attendues par le frontend."""
        data = {
            'name': self.name,
            'path': self.path,
            'relPath': self.rel_path,
            'isDir': self.is_dir,
            'isGitignored': self.is_gitignored,
            'isCustomIgnored': self.is_custom_ignored,
        }
        if self.children is not None:
            data['children'] = [child.to_dict() for child in self.children]
        if self.project_id:
            data['projectId'] = self.project_id
        return data

    def __repr__(self):
        return f"TreeNode({self.rel_path!r}, is_dir={self.is_dir})"


class FileService(BaseService):
    """Service de parcours des répertoires et de construction de l'arborescence filtrée."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, logger: Optional[logging.Logger] = None):
        """
        Initialise le service de fichiers.

        Args:
            config: Dictionnaire de configuration
            logger: Logger optionnel
        """
        super().__init__(config, logger)
        self.gitignore_cache: Dict[str, Optional[PatternSet]] = {}  # Dernier .gitignore compilé par racine
        self._cache_lock = threading.Lock()

    def validate_config(self):
        """Valide la configuration du service."""
        # Pas de validation spécifique requise pour l'instant
        pass

    def load_gitignore(self, root_path: str) -> Optional[PatternSet]:
        """
        Recompile le .gitignore d'une racine et met à jour le cache.

        Returns:
            Le PatternSet du projet, ou None si la racine n'a pas de .gitignore
        """
        root_path = os.path.abspath(root_path)
        spec = load_gitignore_file(root_path)
        with self._cache_lock:
            self.gitignore_cache[root_path] = spec
        if spec is not None:
            self.logger.debug(f".gitignore compilé pour {root_path}: {len(spec)} règles")
        return spec

    def get_cached_gitignore(self, root_path: str) -> Optional[PatternSet]:
        """Retourne le dernier .gitignore compilé pour la racine, en le chargeant au besoin."""
        root_path = os.path.abspath(root_path)
        with self._cache_lock:
            if root_path in self.gitignore_cache:
                return self.gitignore_cache[root_path]
        return self.load_gitignore(root_path)

    def list_files(self, dir_path: str, ignore_rules: Optional[IgnoreRules] = None,
                   excluded_paths: Optional[Set[str]] = None,
                   cancel_event: Optional[threading.Event] = None,
                   project_id: Optional[str] = None) -> TreeNode:
        """
        Construit l'arborescence complète d'un répertoire.

        Args:
            dir_path: Racine à parcourir
            ignore_rules: Règles actives (aucune règle si None)
            excluded_paths: Chemins relatifs à omettre de la liste
            cancel_event: Jeton d'annulation coopérative
            project_id: Identifiant de projet reporté sur chaque nœud

        Returns:
            Le nœud racine (rel_path '.') et ses enfants

        Raises:
            FileServiceException: Si la racine est invalide ou illisible
            OperationCancelledException: Si l'opération est annulée
        """
        if not dir_path or not os.path.isdir(dir_path):
            error_msg = f"Répertoire invalide: {dir_path}"
            self.logger.error(error_msg)
            raise FileServiceException(error_msg)

        root_path = os.path.abspath(dir_path)
        rules = ignore_rules or IgnoreRules.none()
        excluded = excluded_paths or set()
        self.logger.info(f"Construction de l'arborescence pour {root_path}")

        try:
            entries = list_directory(root_path)
        except OSError as e:
            error_msg = f"Impossible de lire le répertoire racine {root_path}: {e}"
            self.logger.error(error_msg)
            raise FileServiceException(error_msg) from e

        _, root_custom_ignored = rules.evaluate('.', is_dir=True)
        root = TreeNode(
            name=os.path.basename(root_path) or root_path,
            path=root_path,
            rel_path='.',
            is_dir=True,
            is_custom_ignored=root_custom_ignored,
            project_id=project_id,
        )
        root.children = self._build_children(entries, root_path, rules, excluded, cancel_event, project_id)
        return root

    def build_tree(self, current_path: str, root_path: str, ignore_rules: Optional[IgnoreRules] = None,
                   excluded_paths: Optional[Set[str]] = None,
                   cancel_event: Optional[threading.Event] = None,
                   project_id: Optional[str] = None) -> List[TreeNode]:
        """
        Construit la liste triée des nœuds enfants de `current_path`.

        Un sous-répertoire illisible est journalisé et traité comme vide.
        """
        check_cancelled(cancel_event, "tree listing")
        try:
            entries = list_directory(current_path)
        except OSError as e:
            self.logger.warning(f"Lecture impossible de {current_path}, sous-arbre ignoré: {e}")
            return []
        return self._build_children(entries, root_path, ignore_rules or IgnoreRules.none(),
                                    excluded_paths or set(), cancel_event, project_id)

    def _build_children(self, entries, root_path: str, rules: IgnoreRules, excluded: Set[str],
                        cancel_event: Optional[threading.Event], project_id: Optional[str]) -> List[TreeNode]:
        nodes = []
        for entry in entries:
            check_cancelled(cancel_event, "tree listing")
            rel_path = to_relative_posix(entry.path, root_path)
            if rel_path in excluded:
                continue
            gitignored, custom_ignored = rules.evaluate(rel_path, entry.is_dir)
            node = TreeNode(
                name=entry.name,
                path=entry.path,
                rel_path=rel_path,
                is_dir=entry.is_dir,
                is_gitignored=gitignored,
                is_custom_ignored=custom_ignored,
                project_id=project_id,
            )
            if entry.is_dir:
                if gitignored or custom_ignored:
                    # Listé pour l'affichage mais jamais parcouru
                    node.children = []
                else:
                    node.children = self.build_tree(entry.path, root_path, rules, excluded, cancel_event, project_id)
            nodes.append(node)
        return nodes

    def read_file_content(self, file_path: str) -> str:
        """
        Lit un fichier texte en UTF-8 (caractères invalides remplacés).

        Raises:
            OSError: Si le fichier ne peut pas être lu
        """
        with open(file_path, 'rb') as f:
            raw = f.read()
        return raw.decode('utf-8', errors='replace')

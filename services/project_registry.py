import os
import time
import logging
import threading
from typing import Dict, Any, List, Optional, Set

from .exceptions import FileServiceException, ProjectNotFoundException
from .file_utils import to_relative_posix
from .ignore_rules import normalize_user_path


class Project:
    """Répertoire de projet enregistré et ses exclusions manuelles."""

    def __init__(self, project_id: str, root_path: str, name: Optional[str] = None):
        self.id = project_id
        self.root_path = root_path
        self.name = name or os.path.basename(root_path) or root_path
        self.excluded_paths: Set[str] = set()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'path': self.root_path,
            'excludedPaths': sorted(self.excluded_paths),
        }


class ProjectRegistry:
    """Liste des projets ouverts, protégée par un verrou."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._projects: Dict[str, Project] = {}

    def add_project(self, dir_path: str) -> Project:
        """
        Enregistre un répertoire comme projet (une seule fois par chemin).

        Raises:
            FileServiceException: Si le répertoire n'existe pas
        """
        if not dir_path or not os.path.isdir(dir_path):
            raise FileServiceException(f"Répertoire invalide: {dir_path}")
        root_path = os.path.abspath(dir_path)
        with self._lock:
            for project in self._projects.values():
                if project.root_path == root_path:
                    return project
            project_id = f"project_{time.time_ns()}"
            while project_id in self._projects:
                project_id = f"project_{time.time_ns()}"
            project = Project(project_id, root_path)
            self._projects[project_id] = project
        self.logger.info(f"Projet ajouté: {project.name} ({project_id})")
        return project

    def remove_project(self, project_id: str):
        with self._lock:
            project = self._projects.pop(project_id, None)
        if project is None:
            raise ProjectNotFoundException(f"Projet inconnu: {project_id}")
        self.logger.info(f"Projet retiré: {project.name} ({project_id})")

    def get_project(self, project_id: str) -> Project:
        with self._lock:
            project = self._projects.get(project_id)
        if project is None:
            raise ProjectNotFoundException(f"Projet inconnu: {project_id}")
        return project

    def list_projects(self) -> List[Project]:
        with self._lock:
            return list(self._projects.values())

    def toggle_exclusion(self, project_id: str, node_path: str, excluded: bool) -> Set[str]:
        """
        Ajoute ou retire un chemin des exclusions d'un projet.

        Args:
            project_id: Identifiant du projet
            node_path: Chemin absolu ou relatif à la racine du projet
            excluded: True pour exclure, False pour réintégrer

        Returns:
            Une copie des exclusions du projet après modification
        """
        project = self.get_project(project_id)
        if os.path.isabs(node_path):
            rel_path = to_relative_posix(node_path, project.root_path)
        else:
            rel_path = normalize_user_path(node_path)
        if rel_path.startswith('../') or rel_path == '..':
            raise FileServiceException(f"Chemin hors du projet {project.name}: {node_path}")
        with self._lock:
            if excluded:
                project.excluded_paths.add(rel_path)
            else:
                project.excluded_paths.discard(rel_path)
            return set(project.excluded_paths)

    def get_excluded_paths(self, project_id: str) -> Set[str]:
        project = self.get_project(project_id)
        with self._lock:
            return set(project.excluded_paths)

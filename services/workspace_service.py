"""
Façade applicative: relie paramètres, parcours, génération et surveillance.

Les méthodes publiques retournent des dictionnaires {'success': ..., 'error': ...}
directement sérialisables vers l'interface.
"""
import os
import logging
from typing import Dict, Any, Optional, List, Iterable

from .context_builder_service import ContextBuilderService, GenerationTarget
from .context_generator import ContextGenerator
from .event_emitter import EventEmitter
from .exceptions import ServiceException
from .file_service import FileService
from .ignore_rules import IgnoreRules
from .project_registry import ProjectRegistry
from .settings_service import SettingsService
from .watch_service import WatchService


class WorkspaceService:
    """Point d'entrée unique des opérations exposées par le CLI et le serveur web."""

    def __init__(self, service_configs: Optional[Dict[str, Dict[str, Any]]] = None,
                 emitter: Optional[EventEmitter] = None, logger: Optional[logging.Logger] = None,
                 settings_service: Optional[SettingsService] = None,
                 observer_factory=None):
        configs = service_configs or {}
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.emitter = emitter or EventEmitter()
        self.settings = settings_service or SettingsService(configs.get('settings_service'))
        self.file_service = FileService(configs.get('file_service'))
        self.context_builder = ContextBuilderService(configs.get('context_builder'), file_service=self.file_service)
        self.generator = ContextGenerator(self.context_builder, self.emitter)
        watch_kwargs = {'observer_factory': observer_factory} if observer_factory is not None else {}
        self.watcher = WatchService(configs.get('watch_service'), self.active_rules_for, self.emitter, **watch_kwargs)
        self.projects = ProjectRegistry()

    def active_rules_for(self, root_path: str) -> IgnoreRules:
        """Instantané des règles actives pour une racine (dernier .gitignore compilé)."""
        return self.settings.build_ignore_rules(self.file_service.get_cached_gitignore(root_path))

    def _make_target(self, root_path: str, excluded_paths: Optional[Iterable[str]] = None,
                     reload_gitignore: bool = True) -> GenerationTarget:
        if reload_gitignore:
            self.file_service.load_gitignore(root_path)
        return GenerationTarget(root_path, excluded_paths, self.active_rules_for(root_path))

    # --- Arborescence -------------------------------------------------------

    def list_files(self, directory_path: str, project_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            self.file_service.load_gitignore(directory_path)
            root = self.file_service.list_files(directory_path, self.active_rules_for(directory_path),
                                                project_id=project_id)
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        return {'success': True, 'tree': [root.to_dict()]}

    # --- Génération ---------------------------------------------------------

    def request_context_generation(self, directory_path: str,
                                   excluded_paths: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        if not directory_path or not os.path.isdir(directory_path):
            return {'success': False, 'error': f"Répertoire invalide: {directory_path}"}
        token = self.generator.request_generation([self._make_target(directory_path, excluded_paths)])
        return {'success': True, 'job_token': token}

    def request_multi_project_generation(self, project_paths: List[str],
                                         excluded_paths_by_project: Optional[Dict[str, Iterable[str]]] = None
                                         ) -> Dict[str, Any]:
        """Génère un contexte agrégé; les exclusions sont indexées par chemin de projet."""
        if not project_paths:
            return {'success': False, 'error': "Aucun projet sélectionné"}
        invalid = [p for p in project_paths if not os.path.isdir(p)]
        if invalid:
            return {'success': False, 'error': f"Répertoire(s) invalide(s): {', '.join(invalid)}"}
        excluded_by_project = excluded_paths_by_project or {}
        targets = [self._make_target(path, excluded_by_project.get(path)) for path in project_paths]
        token = self.generator.request_generation(targets, multi_root=True)
        return {'success': True, 'job_token': token}

    def request_generation_for_projects(self, project_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """Génère le contexte des projets enregistrés (tous si aucun identifiant n'est fourni)."""
        try:
            projects = ([self.projects.get_project(pid) for pid in project_ids]
                        if project_ids else self.projects.list_projects())
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        if not projects:
            return {'success': False, 'error': "Aucun projet enregistré"}
        targets = [self._make_target(p.root_path, self.projects.get_excluded_paths(p.id)) for p in projects]
        for target, project in zip(targets, projects):
            target.name = project.name
        token = self.generator.request_generation(targets, multi_root=True)
        return {'success': True, 'job_token': token}

    def cancel_generation(self) -> Dict[str, Any]:
        return {'success': True, 'cancelled': self.generator.cancel_current()}

    def get_generation_status(self) -> Dict[str, Any]:
        last_job = self.generator.last_job
        return {
            'success': True,
            'state': self.generator.state.value,
            'job_token': self.generator.current_job_token,
            'last_job_state': last_job.state.value if last_job else None,
        }

    # --- Surveillance -------------------------------------------------------

    def start_file_watcher(self, directory_path: str) -> Dict[str, Any]:
        try:
            self.file_service.load_gitignore(directory_path)
            self.watcher.start(directory_path)
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        return {'success': True, 'watching': self.watcher.root_dir}

    def stop_file_watcher(self) -> Dict[str, Any]:
        self.watcher.stop()
        return {'success': True}

    def _refresh_watcher(self):
        root = self.watcher.root_dir
        if root:
            self.file_service.load_gitignore(root)
            self.watcher.refresh_ignores_and_rescan()

    # --- Paramètres ---------------------------------------------------------

    def get_custom_ignore_rules(self) -> Dict[str, Any]:
        return {'success': True, 'rules': self.settings.get_custom_ignore_rules()}

    def set_custom_ignore_rules(self, rules: str) -> Dict[str, Any]:
        try:
            valid = self.settings.set_custom_ignore_rules(rules)
            self._refresh_watcher()
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        result = {'success': True}
        if not valid:
            result['warning'] = "Règles invalides, dernier ensemble valide conservé"
        return result

    def get_custom_prompt_rules(self) -> Dict[str, Any]:
        return {'success': True, 'rules': self.settings.get_custom_prompt_rules()}

    def set_custom_prompt_rules(self, rules: str) -> Dict[str, Any]:
        try:
            self.settings.set_custom_prompt_rules(rules)
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        return {'success': True}

    def set_use_gitignore(self, enabled: bool) -> Dict[str, Any]:
        self.settings.set_use_gitignore(enabled)
        try:
            self._refresh_watcher()
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        return {'success': True, 'enabled': self.settings.use_gitignore}

    def set_use_custom_ignore(self, enabled: bool) -> Dict[str, Any]:
        self.settings.set_use_custom_ignore(enabled)
        try:
            self._refresh_watcher()
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        return {'success': True, 'enabled': self.settings.use_custom_ignore}

    # --- Projets ------------------------------------------------------------

    def add_project(self, directory_path: str) -> Dict[str, Any]:
        try:
            project = self.projects.add_project(directory_path)
            self.settings.set_last_directory(project.root_path)
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        return {'success': True, 'project': project.to_dict()}

    def remove_project(self, project_id: str) -> Dict[str, Any]:
        try:
            self.projects.remove_project(project_id)
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        return {'success': True}

    def list_projects(self) -> Dict[str, Any]:
        return {'success': True, 'projects': [p.to_dict() for p in self.projects.list_projects()]}

    def toggle_exclusion(self, project_id: str, node_path: str, excluded: bool) -> Dict[str, Any]:
        try:
            excluded_paths = self.projects.toggle_exclusion(project_id, node_path, excluded)
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        return {'success': True, 'excludedPaths': sorted(excluded_paths)}

    def get_excluded_paths(self, project_id: str) -> Dict[str, Any]:
        try:
            excluded_paths = self.projects.get_excluded_paths(project_id)
        except ServiceException as e:
            return {'success': False, 'error': str(e)}
        return {'success': True, 'excludedPaths': sorted(excluded_paths)}

    def shutdown(self):
        """Arrête la surveillance puis la génération en cours."""
        self.watcher.stop()
        self.generator.shutdown()
        self.logger.info("Services arrêtés")

import os
import logging
import threading
from typing import Dict, Any, Optional, List, Iterable, Iterator, Callable, Set

from .base_service import BaseService
from .exceptions import ContextTooLongException, FileServiceException, OperationCancelledException
from .file_service import FileService
from .file_utils import (BRANCH, LAST_BRANCH, PIPE_PREFIX, SPACE_PREFIX, ArtifactBuffer, ProgressState,
                         SizeBudget, check_cancelled, list_directory, to_relative_posix, utf8_size)
from .ignore_rules import IgnoreRules, normalize_user_path

DEFAULT_MAX_OUTPUT_SIZE_BYTES = 10_000_000

PROJECT_HEADER_TEMPLATE = "=== PROJECT: {name} ===\nProject Root: {root}\n\n"
PROJECT_SEPARATOR = "\n\n"
TRUNCATED_MARKER = "\n*** TRUNCATED: Context size limit reached. ***\n"
CANCELLED_MARKER = "\n*** Context generation was cancelled before completion. Output may be incomplete. ***"

ProgressCallback = Callable[[int, int], None]


class GenerationTarget:
    """Une racine à inclure dans le contexte, avec ses exclusions manuelles et ses règles actives."""

    def __init__(self, root_path: str, excluded_paths: Optional[Iterable[str]] = None,
                 ignore_rules: Optional[IgnoreRules] = None, name: Optional[str] = None):
        self.root_path = os.path.abspath(root_path)
        self.name = name or os.path.basename(self.root_path) or self.root_path
        self.excluded_paths: Set[str] = {normalize_user_path(p) for p in (excluded_paths or [])}
        self.ignore_rules = ignore_rules or IgnoreRules.none()

    @property
    def is_root_excluded(self) -> bool:
        return '.' in self.excluded_paths

    def is_included(self, rel_path: str, is_dir: bool) -> bool:
        return rel_path not in self.excluded_paths and not self.ignore_rules.is_ignored(rel_path, is_dir)

    def __repr__(self):
        return f"GenerationTarget({self.root_path!r}, excluded={len(self.excluded_paths)})"


class ContextBuilderService(BaseService):
    """
    Service d'assemblage du contexte: arborescence texte suivie du contenu des fichiers.

    La taille produite est comptée en octets UTF-8 au fil de l'écriture; un
    dépassement du plafond interrompt la génération sans produire de sortie
    tronquée.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, logger: Optional[logging.Logger] = None,
                 file_service: Optional[FileService] = None):
        """
        Initialise le service de construction de contexte.

        Args:
            config: Dictionnaire de configuration (max_output_size_bytes, truncate_multi_project_output)
            logger: Logger optionnel
            file_service: Service utilisé pour lire le contenu des fichiers
        """
        super().__init__(config, logger)
        self.file_service = file_service or FileService({}, self.logger)

    def validate_config(self):
        """Valide la configuration du service."""
        self.max_output_size_bytes = int(self.get_positive_number('max_output_size_bytes', DEFAULT_MAX_OUTPUT_SIZE_BYTES))
        self.truncate_multi_project_output = bool(self.get_config_value('truncate_multi_project_output', False))

    # --- Comptage -----------------------------------------------------------

    def count_processable_items(self, target: GenerationTarget,
                                cancel_event: Optional[threading.Event] = None) -> int:
        """
        Compte les unités de progression d'une racine.

        1 pour la ligne racine, 1 par entrée retenue, 1 de plus par fichier retenu.
        """
        if target.is_root_excluded:
            return 1
        return 1 + self._count_directory(target, target.root_path, cancel_event)

    def _count_directory(self, target: GenerationTarget, dir_path: str,
                         cancel_event: Optional[threading.Event]) -> int:
        check_cancelled(cancel_event, "context counting")
        try:
            entries = list_directory(dir_path)
        except OSError as e:
            self.logger.warning(f"Comptage: lecture impossible de {dir_path}: {e}")
            return 0
        count = 0
        for entry in entries:
            rel_path = to_relative_posix(entry.path, target.root_path)
            if not target.is_included(rel_path, entry.is_dir):
                continue
            count += 1
            if entry.is_dir:
                count += self._count_directory(target, entry.path, cancel_event)
            else:
                count += 1
        return count

    # --- Sonde de contenu ---------------------------------------------------

    def iter_includable_files(self, target: GenerationTarget,
                              cancel_event: Optional[threading.Event] = None) -> Iterator[str]:
        """Itère en profondeur sur les chemins relatifs des fichiers retenus, dans l'ordre du rendu."""
        if target.is_root_excluded:
            return
        stack = [target.root_path]
        while stack:
            check_cancelled(cancel_event, "content probe")
            dir_path = stack.pop()
            try:
                entries = list_directory(dir_path)
            except OSError as e:
                self.logger.warning(f"Lecture impossible de {dir_path}: {e}")
                continue
            subdirs = []
            for entry in entries:
                rel_path = to_relative_posix(entry.path, target.root_path)
                if not target.is_included(rel_path, entry.is_dir):
                    continue
                if entry.is_dir:
                    subdirs.append(entry.path)
                else:
                    yield rel_path
            stack.extend(reversed(subdirs))

    def has_includable_content(self, target: GenerationTarget,
                               cancel_event: Optional[threading.Event] = None) -> bool:
        for _ in self.iter_includable_files(target, cancel_event):
            return True
        return False

    # --- Rendu --------------------------------------------------------------

    def build_context(self, target: GenerationTarget,
                      cancel_event: Optional[threading.Event] = None,
                      progress_callback: Optional[ProgressCallback] = None) -> str:
        """
        Construit le contexte d'une seule racine.

        Args:
            target: Racine, exclusions et règles actives
            cancel_event: Jeton d'annulation coopérative
            progress_callback: Appelé avec (current, total) après chaque unité traitée

        Returns:
            L'arborescence, puis une ligne vide et les blocs <file> s'il y en a

        Raises:
            ContextTooLongException: Si la sortie dépasse max_output_size_bytes
            FileServiceException: Si la racine est illisible
            OperationCancelledException: Si la génération est annulée
        """
        self._check_root(target)
        progress = ProgressState(0, progress_callback)
        budget = SizeBudget(self.max_output_size_bytes)
        root_line = f"{target.name}/\n"

        if target.is_root_excluded:
            self.logger.info(f"Racine {target.root_path} exclue, contexte réduit à la ligne racine")
            budget.consume(root_line, "racine")
            progress.add_to_total(1)
            progress.advance()
            return root_line

        progress.add_to_total(self.count_processable_items(target, cancel_event))
        self.logger.debug(f"{progress.total_items} éléments à traiter pour {target.root_path}")
        buffer = ArtifactBuffer(budget)
        self._render_target(target, buffer, progress, cancel_event)
        return buffer.render()

    def build_multi_project_context(self, targets: List[GenerationTarget],
                                    cancel_event: Optional[threading.Event] = None,
                                    progress_callback: Optional[ProgressCallback] = None) -> str:
        """
        Construit un contexte agrégé pour plusieurs racines.

        Chaque racine ayant au moins un fichier retenu est précédée de son
        en-tête; le plafond de taille s'applique à l'ensemble.

        Raises:
            ContextTooLongException: Si la sortie dépasse le plafond et que la troncature est désactivée
            OperationCancelledException: Si annulé; `partial_output` contient les projets terminés
        """
        progress = ProgressState(0, progress_callback)
        budget = SizeBudget(self.max_output_size_bytes)

        included = []
        for target in targets:
            self._check_root(target)
            if self.has_includable_content(target, cancel_event):
                included.append(target)
            else:
                self.logger.info(f"Projet {target.name} ignoré: aucun fichier à inclure")
        for target in included:
            progress.add_to_total(1 + self.count_processable_items(target, cancel_event))

        parts: List[str] = []
        for target in included:
            checkpoint = budget.checkpoint()
            try:
                check_cancelled(cancel_event, "context generation")
                block_prefix = (PROJECT_SEPARATOR if parts else "") + PROJECT_HEADER_TEMPLATE.format(
                    name=target.name, root=target.root_path)
                budget.consume(block_prefix, f"en-tête {target.name}")
                progress.advance()
                buffer = ArtifactBuffer(budget)
                self._render_target(target, buffer, progress, cancel_event)
            except ContextTooLongException:
                if not self.truncate_multi_project_output:
                    raise
                budget.restore(checkpoint)
                self.logger.warning(f"Contexte tronqué avant le projet {target.name}")
                parts.append(TRUNCATED_MARKER)
                break
            except OperationCancelledException as e:
                raise OperationCancelledException(str(e), partial_output=''.join(parts) or None) from e
            parts.append(block_prefix + buffer.render())

        output = ''.join(parts)
        self.logger.debug(f"Contexte multi-projets: {len(included)}/{len(targets)} projets, {utf8_size(output)} octets")
        return output

    def _check_root(self, target: GenerationTarget):
        if not os.path.isdir(target.root_path):
            error_msg = f"Répertoire racine introuvable: {target.root_path}"
            self.logger.error(error_msg)
            raise FileServiceException(error_msg)

    def _render_target(self, target: GenerationTarget, buffer: ArtifactBuffer,
                       progress: ProgressState, cancel_event: Optional[threading.Event]):
        buffer.write_tree(f"{target.name}/\n")
        progress.advance()
        self._render_directory(target, target.root_path, "", buffer, progress, cancel_event)

    def _render_directory(self, target: GenerationTarget, dir_path: str, prefix: str,
                          buffer: ArtifactBuffer, progress: ProgressState,
                          cancel_event: Optional[threading.Event]):
        check_cancelled(cancel_event, "context generation")
        try:
            entries = list_directory(dir_path)
        except OSError as e:
            if dir_path == target.root_path:
                error_msg = f"Impossible de lire le répertoire racine {dir_path}: {e}"
                self.logger.error(error_msg)
                raise FileServiceException(error_msg) from e
            self.logger.warning(f"Lecture impossible de {dir_path}, sous-arbre ignoré: {e}")
            return

        # Le filtrage précède le calcul du dernier élément pour garder des connecteurs corrects
        visible = []
        for entry in entries:
            rel_path = to_relative_posix(entry.path, target.root_path)
            if target.is_included(rel_path, entry.is_dir):
                visible.append((entry, rel_path))

        for index, (entry, rel_path) in enumerate(visible):
            check_cancelled(cancel_event, "context generation")
            is_last = index == len(visible) - 1
            buffer.write_tree(f"{prefix}{LAST_BRANCH if is_last else BRANCH}{entry.name}\n")
            progress.advance()

            if entry.is_dir:
                child_prefix = prefix + (SPACE_PREFIX if is_last else PIPE_PREFIX)
                self._render_directory(target, entry.path, child_prefix, buffer, progress, cancel_event)
                continue

            check_cancelled(cancel_event, "context generation")
            content = self._read_file_content(entry.path)
            buffer.write_content(f'<file path="{rel_path}">\n{content}\n</file>\n', rel_path)
            progress.advance()

    def _read_file_content(self, file_path: str) -> str:
        try:
            return self.file_service.read_file_content(file_path)
        except OSError as e:
            self.logger.warning(f"Erreur de lecture de {file_path}: {e}")
            return f"Error reading file: {e}"

"""
Gestionnaire de génération de contexte en arrière-plan.

Une seule génération est active à la fois: toute nouvelle demande annule la
précédente. Chaque tâche porte un jeton d'identité; le thread d'une tâche ne
libère l'emplacement courant que si ce jeton est toujours le sien.
"""
import itertools
import logging
import threading
import time
import uuid
from enum import Enum
from typing import List, Optional

from .context_builder_service import CANCELLED_MARKER, ContextBuilderService, GenerationTarget
from .event_emitter import (EVENT_CONTEXT_CANCELLED, EVENT_CONTEXT_ERROR, EVENT_CONTEXT_GENERATED,
                            EVENT_GENERATION_PROGRESS, EventEmitter)
from .exceptions import ContextTooLongException, OperationCancelledException, ServiceException
from .file_utils import estimate_tokens, utf8_size

CANCEL_REASON_SUPERSEDED = "superseded"
CANCEL_REASON_SHUTDOWN = "shutdown"
CANCEL_REASON_USER = "user"


class JobState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GenerationJob:
    """Tâche de génération: identité, jeton d'annulation et état."""

    def __init__(self, job_id: int, targets: List[GenerationTarget], multi_root: bool = False):
        self.job_id = job_id
        self.token = uuid.uuid4().hex
        self.targets = targets
        self.multi_root = multi_root or len(targets) > 1
        self.cancel_event = threading.Event()
        self.cancel_reason: Optional[str] = None
        self.state = JobState.RUNNING
        self.thread: Optional[threading.Thread] = None

    @property
    def description(self) -> str:
        if not self.multi_root:
            return self.targets[0].root_path
        return f"{len(self.targets)} project(s)"

    def cancel(self, reason: str):
        if not self.cancel_event.is_set():
            self.cancel_reason = reason
            self.cancel_event.set()

    def __repr__(self):
        return f"GenerationJob(#{self.job_id}, {self.description!r}, {self.state.value})"


class ContextGenerator:
    """Lance, annule et supervise les générations de contexte (une seule à la fois)."""

    def __init__(self, context_builder: ContextBuilderService, emitter: EventEmitter,
                 logger: Optional[logging.Logger] = None):
        self.context_builder = context_builder
        self.emitter = emitter
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        # RLock: un écouteur peut relancer une génération depuis une notification
        self._lock = threading.RLock()
        self._job_ids = itertools.count(1)
        self._current_job: Optional[GenerationJob] = None
        self._last_terminal_job_id = 0
        self._last_job: Optional[GenerationJob] = None

    @property
    def current_job_token(self) -> Optional[str]:
        with self._lock:
            return self._current_job.token if self._current_job else None

    @property
    def state(self) -> JobState:
        with self._lock:
            return JobState.RUNNING if self._current_job else JobState.IDLE

    @property
    def last_job(self) -> Optional[GenerationJob]:
        with self._lock:
            return self._last_job

    def request_generation(self, targets: List[GenerationTarget], multi_root: bool = False) -> str:
        """
        Annule la génération en cours et en démarre une nouvelle.

        Le résultat arrive par notification; seul le jeton de la tâche est retourné.
        Avec `multi_root`, le format multi-projets (en-têtes) est utilisé même pour une seule racine.

        Raises:
            ValueError: Si aucune racine n'est fournie
        """
        if not targets:
            raise ValueError("Aucun répertoire à traiter")
        with self._lock:
            if self._current_job is not None:
                self.logger.info(f"Annulation de la génération précédente {self._current_job!r}")
                self._current_job.cancel(CANCEL_REASON_SUPERSEDED)
            job = GenerationJob(next(self._job_ids), list(targets), multi_root)
            self._current_job = job
            self._last_job = job
            job.thread = threading.Thread(target=self._run_job, args=(job,),
                                          name=f"context-generation-{job.job_id}", daemon=True)
            job.thread.start()
        self.logger.info(f"Génération #{job.job_id} démarrée pour {job.description}")
        return job.token

    def cancel_current(self, reason: str = CANCEL_REASON_USER) -> bool:
        with self._lock:
            job = self._current_job
            if job is None:
                return False
            job.cancel(reason)
        self.logger.info(f"Génération #{job.job_id} annulée ({reason})")
        return True

    def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Attend la fin de la tâche courante (et de celles qui la remplacent)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                job = self._current_job
            if job is None:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            job.thread.join(remaining)
            if job.thread.is_alive():
                return False

    def shutdown(self, timeout: Optional[float] = 5.0) -> bool:
        """Annule la tâche courante et attend sa fin."""
        self.cancel_current(CANCEL_REASON_SHUTDOWN)
        return self.wait_for_idle(timeout)

    # --- Exécution ----------------------------------------------------------

    def _run_job(self, job: GenerationJob):
        start_time = time.monotonic()
        try:
            if job.cancel_event.is_set():
                raise OperationCancelledException("context generation cancelled before start")
            progress = lambda current, total: self._emit_progress(job, current, total)
            if not job.multi_root:
                output = self.context_builder.build_context(job.targets[0], job.cancel_event, progress)
            else:
                output = self.context_builder.build_multi_project_context(job.targets, job.cancel_event, progress)
            if job.cancel_event.is_set():
                raise OperationCancelledException("context generation cancelled after completion")

            char_count, tokens = estimate_tokens(output)
            self.logger.info(f"Génération #{job.job_id} terminée en {time.monotonic() - start_time:.2f}s: "
                             f"{utf8_size(output)} octets, {char_count} caractères, ~{int(tokens)} tokens")
            self._finish(job, JobState.COMPLETED, EVENT_CONTEXT_GENERATED, output)

        except OperationCancelledException as e:
            if e.partial_output:
                self.logger.info(f"Génération #{job.job_id} interrompue ({job.cancel_reason}), résultat partiel publié")
                self._finish(job, JobState.CANCELLED, EVENT_CONTEXT_GENERATED, e.partial_output + CANCELLED_MARKER)
            else:
                reason = job.cancel_reason or CANCEL_REASON_USER
                self.logger.info(f"Génération #{job.job_id} annulée ({reason})")
                self._finish(job, JobState.CANCELLED, EVENT_CONTEXT_CANCELLED,
                             f"Context generation for {job.description} was cancelled ({reason}).")

        except ContextTooLongException as e:
            self.logger.warning(f"Génération #{job.job_id}: contexte trop long ({e.size} > {e.limit} octets)")
            self._finish(job, JobState.FAILED, EVENT_CONTEXT_ERROR,
                         f"Error generating context for {job.description}: {e}")

        except ServiceException as e:
            self.logger.error(f"Génération #{job.job_id} en échec: {e}")
            self._finish(job, JobState.FAILED, EVENT_CONTEXT_ERROR,
                         f"Error generating context for {job.description}: {e}")

        except Exception as e:
            self.logger.error(f"Erreur inattendue pendant la génération #{job.job_id}: {e}", exc_info=True)
            self._finish(job, JobState.FAILED, EVENT_CONTEXT_ERROR,
                         f"Unexpected error generating context for {job.description}: {e}")

        finally:
            with self._lock:
                if self._current_job is job:
                    self._current_job = None
                    self.logger.debug(f"Génération #{job.job_id} libérée")
                else:
                    self.logger.debug(f"Génération #{job.job_id} déjà remplacée, emplacement conservé")

    def _finish(self, job: GenerationJob, state: JobState, event_name: str, payload):
        with self._lock:
            job.state = state
            if job.job_id < self._last_terminal_job_id:
                self.logger.debug(f"Notification obsolète de la génération #{job.job_id} supprimée")
                return
            self._last_terminal_job_id = job.job_id
            self.emitter.emit(event_name, payload)

    def _emit_progress(self, job: GenerationJob, current: int, total: int):
        with self._lock:
            if job.cancel_event.is_set() or job.job_id < self._last_terminal_job_id:
                return
            self.emitter.emit(EVENT_GENERATION_PROGRESS, {'current': current, 'total': total})

import os
import json
import logging
import threading
from typing import Dict, Any, Optional

import appdirs

from .base_service import BaseService
from .exceptions import ConfigurationException
from .ignore_rules import IgnoreRules, PatternSet, load_default_custom_rules

APP_NAME = 'ShotgunContext'
APP_AUTHOR = 'ShotgunContext'
DEFAULT_CUSTOM_PROMPT_RULES = "no additional rules"


def default_settings_path() -> str:
    return os.path.join(appdirs.user_config_dir(APP_NAME, APP_AUTHOR), 'settings.json')


class SettingsService(BaseService):
    """
    Paramètres utilisateur persistés dans settings.json.

    Gère les règles d'exclusion personnalisées (compilées en copie sur
    écriture), les règles de prompt, le dernier répertoire ouvert et les deux
    interrupteurs d'application des règles.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, logger: Optional[logging.Logger] = None):
        """
        Initialise le service et charge les paramètres.

        Args:
            config: Dictionnaire de configuration (settings_path optionnel)
            logger: Logger optionnel
        """
        super().__init__(config, logger)
        self._lock = threading.Lock()
        self.default_custom_ignore_rules = load_default_custom_rules()
        self._custom_ignore_rules = self.default_custom_ignore_rules
        self._custom_prompt_rules = DEFAULT_CUSTOM_PROMPT_RULES
        self._custom_patterns = PatternSet.compile(self._custom_ignore_rules)
        self._last_directory = ''
        self._use_gitignore = True
        self._use_custom_ignore = True
        self.load()

    def validate_config(self):
        """Valide la configuration du service."""
        self.settings_path = self.get_config_value('settings_path') or default_settings_path()
        if not isinstance(self.settings_path, str):
            raise ValueError("SettingsService: 'settings_path' doit être une chaîne")

    def load(self):
        """
        Charge settings.json; un fichier absent est créé avec les valeurs par défaut,
        un fichier illisible ou corrompu laisse les valeurs par défaut en place.
        """
        if not os.path.exists(self.settings_path):
            self.logger.info(f"Fichier de paramètres absent, création avec les valeurs par défaut: {self.settings_path}")
            try:
                self.save()
            except ConfigurationException as e:
                self.logger.warning(f"{e}")
            return

        try:
            with open(self.settings_path, 'r', encoding='utf-8') as f:
                settings = json.load(f)
            if not isinstance(settings, dict):
                raise ValueError("contenu inattendu")
        except (json.JSONDecodeError, ValueError, OSError) as e:
            self.logger.warning(f"Erreur lors de la lecture des paramètres: {e}, utilisation des valeurs par défaut")
            return

        ignore_rules = settings.get('customIgnoreRules') or self.default_custom_ignore_rules
        prompt_rules = settings.get('customPromptRules') or DEFAULT_CUSTOM_PROMPT_RULES
        compiled = PatternSet.try_compile(ignore_rules)
        if compiled is None:
            self.logger.warning("Règles personnalisées enregistrées invalides, règles par défaut conservées")
            ignore_rules = self.default_custom_ignore_rules
            compiled = PatternSet.compile(ignore_rules)
        with self._lock:
            self._custom_ignore_rules = ignore_rules
            self._custom_prompt_rules = prompt_rules
            self._custom_patterns = compiled
            self._last_directory = settings.get('last_directory', '') or ''
        self.logger.info(f"Paramètres chargés depuis {self.settings_path}")

    def save(self):
        """
        Raises:
            ConfigurationException: Si le fichier ne peut pas être écrit
        """
        with self._lock:
            settings = {
                'customIgnoreRules': self._custom_ignore_rules,
                'customPromptRules': self._custom_prompt_rules,
                'last_directory': self._last_directory,
            }
        try:
            os.makedirs(os.path.dirname(self.settings_path) or '.', exist_ok=True)
            with open(self.settings_path, 'w', encoding='utf-8') as f:
                json.dump(settings, f, indent=2, ensure_ascii=False)
        except OSError as e:
            raise ConfigurationException(f"Impossible d'enregistrer les paramètres ({self.settings_path}): {e}") from e
        self.logger.debug(f"Paramètres enregistrés dans {self.settings_path}")

    # --- Règles d'exclusion personnalisées ---------------------------------

    def get_custom_ignore_rules(self) -> str:
        with self._lock:
            return self._custom_ignore_rules

    def set_custom_ignore_rules(self, rules: str) -> bool:
        """
        Remplace les règles personnalisées et les enregistre.

        Returns:
            False si les règles sont invalides; l'ensemble compilé précédent reste alors actif

        Raises:
            ConfigurationException: Si l'enregistrement échoue
        """
        compiled = PatternSet.try_compile(rules)
        with self._lock:
            self._custom_ignore_rules = rules
            if compiled is not None:
                self._custom_patterns = compiled
        if compiled is None:
            self.logger.warning("Règles personnalisées invalides, dernier ensemble valide conservé")
        else:
            self.logger.info(f"Règles personnalisées mises à jour ({len(compiled)} règles)")
        self.save()
        return compiled is not None

    @property
    def custom_patterns(self) -> PatternSet:
        with self._lock:
            return self._custom_patterns

    # --- Règles de prompt --------------------------------------------------

    def get_custom_prompt_rules(self) -> str:
        with self._lock:
            return self._custom_prompt_rules

    def set_custom_prompt_rules(self, rules: str):
        with self._lock:
            self._custom_prompt_rules = rules
        self.save()

    # --- Dernier répertoire ------------------------------------------------

    def get_last_directory(self) -> str:
        with self._lock:
            return self._last_directory

    def set_last_directory(self, directory_path: str):
        with self._lock:
            self._last_directory = directory_path
        self.save()

    # --- Interrupteurs -----------------------------------------------------

    @property
    def use_gitignore(self) -> bool:
        with self._lock:
            return self._use_gitignore

    def set_use_gitignore(self, enabled: bool):
        with self._lock:
            self._use_gitignore = bool(enabled)
        self.logger.info(f"Application du .gitignore: {'activée' if enabled else 'désactivée'}")

    @property
    def use_custom_ignore(self) -> bool:
        with self._lock:
            return self._use_custom_ignore

    def set_use_custom_ignore(self, enabled: bool):
        with self._lock:
            self._use_custom_ignore = bool(enabled)
        self.logger.info(f"Application des règles personnalisées: {'activée' if enabled else 'désactivée'}")

    def build_ignore_rules(self, gitignore: Optional[PatternSet]) -> IgnoreRules:
        """Instantané des règles actives, selon les interrupteurs courants."""
        with self._lock:
            return IgnoreRules(
                gitignore=gitignore if self._use_gitignore else None,
                custom=self._custom_patterns if self._use_custom_ignore else None,
            )

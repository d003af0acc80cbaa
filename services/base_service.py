import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional


class BaseService(ABC):
    """Classe de base pour tous les services."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, logger: Optional[logging.Logger] = None):
        """
        Initialise le service de base.

        Args:
            config: Dictionnaire de configuration (vide si non fourni)
            logger: Logger optionnel, crée un logger par défaut si non fourni
        """
        self.config = config if config is not None else {}
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.validate_config()

    @abstractmethod
    def validate_config(self):
        """
        Valide la configuration requise pour le service.

        Raises:
            ValueError: Si la configuration est invalide
        """
        pass

    def get_config_value(self, key: str, default: Any = None) -> Any:
        """
        Récupère une valeur de configuration, en retombant sur `default` si absente ou None.

        Args:
            key: Clé de configuration
            default: Valeur par défaut si la clé n'existe pas

        Returns:
            La valeur de configuration ou la valeur par défaut
        """
        value = self.config.get(key)
        return default if value is None else value

    def get_positive_number(self, key: str, default: float) -> float:
        """
        Récupère une valeur numérique strictement positive.

        Raises:
            ValueError: Si la valeur n'est pas un nombre strictement positif
        """
        value = self.get_config_value(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValueError(f"{self.__class__.__name__}: '{key}' doit être un nombre strictement positif (reçu: {value!r})")
        return value

"""Lecture de config.ini et répartition en configurations par service."""
import os
import logging
import configparser
from typing import Dict, Any

from .context_builder_service import DEFAULT_MAX_OUTPUT_SIZE_BYTES

DEFAULT_CONFIG_PATH = 'config.ini'

logger = logging.getLogger(__name__)


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Charge la configuration depuis config.ini.

    Un fichier absent donne les valeurs par défaut; une valeur mal formée
    lève ValueError.
    """
    config = configparser.ConfigParser()
    if os.path.exists(config_path):
        config.read(config_path, encoding='utf-8')
        logger.info(f"Configuration chargée depuis {config_path}")
    else:
        logger.info(f"Fichier de configuration {config_path} non trouvé, utilisation des valeurs par défaut")

    return {
        'debug': config.getboolean('Debug', 'debug', fallback=False),
        'max_output_size_bytes': config.getint('Generation', 'max_output_size_bytes',
                                               fallback=DEFAULT_MAX_OUTPUT_SIZE_BYTES),
        'truncate_multi_project_output': config.getboolean('Generation', 'truncate_multi_project_output',
                                                           fallback=False),
        'event_poll_interval': config.getfloat('Watcher', 'event_poll_interval', fallback=0.5),
        'stop_timeout': config.getfloat('Watcher', 'stop_timeout', fallback=2.0),
        'settings_path': config.get('Settings', 'settings_path', fallback='') or None,
    }


def load_service_configs(config: Dict[str, Any] = None) -> Dict[str, Dict[str, Any]]:
    """Répartit la configuration globale entre les services."""
    if config is None:
        config = load_config()
    return {
        'file_service': {
            'debug': config.get('debug', False),
        },
        'context_builder': {
            'max_output_size_bytes': config.get('max_output_size_bytes', DEFAULT_MAX_OUTPUT_SIZE_BYTES),
            'truncate_multi_project_output': config.get('truncate_multi_project_output', False),
        },
        'watch_service': {
            'event_poll_interval': config.get('event_poll_interval', 0.5),
            'stop_timeout': config.get('stop_timeout', 2.0),
        },
        'settings_service': {
            'settings_path': config.get('settings_path'),
        },
    }

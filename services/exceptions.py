"""Exceptions personnalisées pour les services."""


class ServiceException(Exception):
    """Exception de base pour tous les services."""
    pass


class FileServiceException(ServiceException):
    """Exception liée aux opérations sur les fichiers."""
    pass


class ConfigurationException(ServiceException):
    """Exception liée à la configuration ou aux paramètres persistés."""
    pass


class WatchServiceException(ServiceException):
    """Exception liée à la surveillance du système de fichiers."""
    pass


class ProjectNotFoundException(ServiceException):
    """Exception levée quand un projet inconnu est référencé."""
    pass


class ContextTooLongException(ServiceException):
    """Exception levée quand le contexte dépasse la taille maximale autorisée."""

    def __init__(self, message: str = "context is too long", limit: int = None, size: int = None):
        """
        Args:
            message: Message d'erreur
            limit: Taille maximale autorisée, en octets
            size: Taille atteinte au moment du dépassement, en octets
        """
        super().__init__(message)
        self.limit = limit
        self.size = size


class OperationCancelledException(ServiceException):
    """Exception levée quand une opération est annulée coopérativement."""

    def __init__(self, message: str = "operation cancelled", partial_output: str = None):
        """
        Args:
            message: Message d'erreur
            partial_output: Sortie déjà produite avant l'annulation, le cas échéant
        """
        super().__init__(message)
        self.partial_output = partial_output

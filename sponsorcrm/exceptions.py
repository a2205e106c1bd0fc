"""
Erreurs métier du CRM.

Les messages sont destinés à l'utilisateur final (pt-BR).
"""


class CRMError(Exception):
    """Base de toutes les erreurs de l'application."""


class ValidationError(CRMError):
    """Donnée refusée côté client, avant tout aller-retour réseau."""


class DuplicateRelationError(ValidationError):
    def __init__(self, event_id: str, company_id: str):
        self.event_id = event_id
        self.company_id = company_id
        super().__init__("Empresa já vinculada a este evento.")


class NotFoundError(CRMError):
    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"Registro {record_id} não encontrado em {table}.")


class WriteError(CRMError):
    """Écriture refusée par la passerelle distante (contrainte, réseau...)."""

    def __init__(self, message: str, cause: Exception = None):
        self.cause = cause
        super().__init__(message)


class AuditUnavailableError(CRMError):
    """La table d'audit n'existe pas encore côté base."""

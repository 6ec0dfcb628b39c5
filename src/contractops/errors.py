from __future__ import annotations
from typing import Any, Dict, List, Optional

class ContractOpsError(Exception):
    status_code = 500
    error = "Internal server error"

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload

class ValidationError(ContractOpsError):
    status_code = 400

    def __init__(self, message: str, details: Optional[str] = None, invalid_signers: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, details)
        self.invalid_signers = invalid_signers or []

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.invalid_signers:
            payload["invalidSigners"] = self.invalid_signers
        return payload

class AuthenticationError(ContractOpsError):
    status_code = 401

class NotFoundError(ContractOpsError):
    status_code = 404

class ConfigurationError(ContractOpsError):
    status_code = 500

class PersistenceError(ContractOpsError):
    status_code = 500

class GatewayError(ContractOpsError):
    status_code = 502

"""
FastAPI dependencies exposing the process-wide components built by ``create_app``.
"""

from __future__ import annotations

from fastapi import Request

from ..core.vault import CredentialVault
from ..services.audit import AuditLogger
from ..services.authenticator import Authenticator
from ..services.client_manager import ClientFactory, ClientManager


def get_audit(request: Request) -> AuditLogger:
    return request.app.state.audit


def get_authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


def get_vault(request: Request) -> CredentialVault:
    return request.app.state.vault


def get_client_manager(request: Request) -> ClientManager:
    return request.app.state.clients


def get_client_factory(request: Request) -> ClientFactory:
    return request.app.state.client_factory

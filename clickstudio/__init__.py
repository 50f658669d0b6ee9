"""ClickStudio RBAC server: authentication, authorization, audit and ClickHouse client pooling."""

from .core.config import APP_VERSION

__version__ = APP_VERSION

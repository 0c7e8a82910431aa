"""
PDPJ Auth Package
Access-token acquisition and authenticated browser sessions for the PDPJ
service portal and PJe.

CLI Usage:
    python -m pdpj_auth <token|session> [options]

    Options:
        -u / -p          Credentials (else PJE_USER / PJE_PASS, else prompt)
        --process        Process number to search inside the session
        --headed         Show the browser
        --show-config    Log the effective configuration
"""

from .auth import (
    AcquisitionChain,
    AcquisitionResult,
    Credentials,
    SessionManager,
    TokenExtractor,
)
from .run_config import ServiceConfig
from . import errors, interaction_policy

__all__ = [
    'AcquisitionChain',
    'AcquisitionResult',
    'Credentials',
    'SessionManager',
    'TokenExtractor',
    'ServiceConfig',
    'errors',
    'interaction_policy',
]

__version__ = '1.0.0'

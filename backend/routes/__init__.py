"""
DocSpace Flow Hub - Routes Package

Modular API routers for the Flow Hub.
"""

from .auth import router as auth_router, set_dependencies as set_auth_deps
from .flows import router as flows_router, set_dependencies as set_flows_deps
from .webhooks import router as webhooks_router, set_dependencies as set_webhooks_deps
from .projects import router as projects_router, set_dependencies as set_projects_deps
from .contacts import router as contacts_router, set_dependencies as set_contacts_deps

__all__ = [
    'auth_router', 'set_auth_deps',
    'flows_router', 'set_flows_deps',
    'webhooks_router', 'set_webhooks_deps',
    'projects_router', 'set_projects_deps',
    'contacts_router', 'set_contacts_deps',
]

"""
Account creation for identities that have no local record yet.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from sqlalchemy import insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from .config import PROVISIONED_AUTH_TYPE
from .directory import users, store_errors

logger = logging.getLogger(__name__)


class ProvisioningError(Exception):
    """Raised when an account could not be created."""
    pass


class Provisioner(ABC):
    """Creates local accounts on behalf of the reconciler."""

    @abstractmethod
    def provision(self, profile: Dict[str, Any], identity_hint: Dict[str, Any]) -> Optional[int]:
        """
        Create a local account.

        Args:
            profile: Normalized profile keyed by local field name
            identity_hint: ``login`` and ``email`` of the remote identity

        Returns:
            The new local user id, or None when creation was refused

        Raises:
            ProvisioningError: If creation failed
        """


class StoreProvisioner(Provisioner):
    """Inserts an active, externally authenticated account into the local store."""

    def __init__(self, engine: Engine, auth_type: int = PROVISIONED_AUTH_TYPE):
        self.engine = engine
        self.auth_type = int(auth_type)

    def provision(self, profile: Dict[str, Any], identity_hint: Dict[str, Any]) -> Optional[int]:
        name = identity_hint.get('login') or profile.get('name') or identity_hint.get('email')
        if not name:
            logger.warning("Refusing to create an account without a login or email")
            return None

        with store_errors('account creation'):
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(insert(users).values(name=name, authtype=self.auth_type, is_active=True))
                    user_id = result.inserted_primary_key[0]
            except IntegrityError as e:
                raise ProvisioningError(f"Could not create account '{name}': {e.orig}")

        logger.debug(f"Created local account {user_id} for '{name}'")
        return user_id

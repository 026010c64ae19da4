"""
Local user store access.

Defines the UserDirectory repository the reconciler works against and its
SQLAlchemy Core implementation, plus the flat key/value configuration store
that lives in the same database.
"""

import logging
import contextlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Iterable, Tuple

from sqlalchemy import (
    MetaData, Table, Column, Integer, String, Boolean, Text, JSON, ForeignKey,
    create_engine, select, update, insert
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .config import ConfigurationError, LocalField, AuthType, FLAT_KEYS, encrypt_secret

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the local user store cannot be read or written."""
    pass


EXTERNALLY_MANAGED = (AuthType.LDAP, AuthType.EXTERNAL)

_naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=_naming_convention)

users = Table(
    'users', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(255), nullable=False, index=True),
    Column('firstname', String(255)),
    Column('realname', String(255)),
    Column('phone', String(255)),
    Column('nickname', String(255)),
    Column('authtype', Integer, nullable=False, default=int(AuthType.EXTERNAL), index=True),
    Column('is_active', Boolean, nullable=False, default=True),
    Column('supervisor_id', Integer, nullable=True),
    Column('groups', JSON, nullable=True),
)

user_emails = Table(
    'user_emails', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('users.id'), nullable=False, index=True),
    Column('email', String(255), nullable=False, index=True),
    Column('is_default', Boolean, nullable=False, default=False),
)

sync_config = Table(
    'sync_config', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(150), nullable=False, unique=True),
    Column('value', Text),
)

# Local field -> users column. Email lives in user_emails.
FIELD_COLUMNS = {
    LocalField.NAME: users.c.name,
    LocalField.GIVEN_NAME: users.c.firstname,
    LocalField.FAMILY_NAME: users.c.realname,
    LocalField.PHONE_NUMBER: users.c.phone,
    LocalField.NICKNAME: users.c.nickname,
}

GROUPS_KEY = 'groups'


@dataclass
class LocalUserRecord:
    """Snapshot of one local account."""
    id: int
    name: str
    auth_type: int
    is_active: bool
    supervisor_id: Optional[int] = None
    emails: Tuple[str, ...] = field(default_factory=tuple)


class UserDirectory(ABC):
    """
    Repository over local user records.

    Lookups only consider accounts whose auth type is in ``auth_types``
    (by default LDAP or external authentication). Account creation is not
    part of this interface; see provisioning.Provisioner.
    """

    auth_types: Tuple[int, ...] = tuple(int(auth_type) for auth_type in EXTERNALLY_MANAGED)

    @abstractmethod
    def find_user_id_by_email(self, email: Optional[str]) -> Optional[int]:
        """Exact email lookup; blank input returns None without querying."""

    @abstractmethod
    def find_user_id_by_field(self, field: LocalField, value: Any) -> Optional[int]:
        """Lookup by the local attribute backing ``field``."""

    @abstractmethod
    def find_user_id_by_name(self, name: Optional[str]) -> Optional[int]:
        """Exact login-name lookup."""

    @abstractmethod
    def update_supervisor(self, user_id: int, supervisor_id: int) -> bool:
        """Set the supervisor link; returns False when it already had that value."""

    @abstractmethod
    def write_profile(self, user_id: int, profile: Dict[str, Any]):
        """Overwrite profile attributes, keyed by LocalField value or ``groups``."""

    @abstractmethod
    def list_accounts(self, auth_types: Iterable[int]) -> List[LocalUserRecord]:
        """All accounts with one of the given auth types."""

    @abstractmethod
    def set_active(self, user_id: int, active: bool):
        """Activate or deactivate an account."""


def create_store_engine(url: str, **kwargs) -> Engine:
    """
    Create a SQLAlchemy engine for the local store.

    In-memory SQLite databases share one connection so that every
    component sees the same data.
    """
    if url.startswith('sqlite') and (url in ('sqlite://', 'sqlite:///') or ':memory:' in url):
        kwargs.setdefault('poolclass', StaticPool)
        kwargs.setdefault('connect_args', {'check_same_thread': False})
    else:
        kwargs.setdefault('pool_pre_ping', True)
    return create_engine(url, future=True, **kwargs)


def init_schema(engine: Engine):
    """Create missing tables."""
    try:
        metadata.create_all(engine)
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to create schema: {e}")
    logger.info("Local store schema is up to date")


@contextlib.contextmanager
def store_errors(operation: str):
    """Translate SQLAlchemy failures into StoreError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Store failure during {operation}: {e}")
        raise StoreError(f"{operation} failed: {e}")


class SqlUserDirectory(UserDirectory):
    """UserDirectory backed by the users/user_emails tables."""

    def __init__(self, engine: Engine, auth_types: Iterable[int] = EXTERNALLY_MANAGED,
                 groups_field: str = GROUPS_KEY):
        self.engine = engine
        self.auth_types = tuple(int(auth_type) for auth_type in auth_types)
        # Profile key whose list value is stored in the groups column
        self.groups_field = groups_field

    def _first_id(self, statement, operation: str) -> Optional[int]:
        # Lowest id wins when several accounts match
        statement = statement.where(users.c.authtype.in_(self.auth_types)).order_by(users.c.id).limit(1)
        with store_errors(operation), self.engine.connect() as conn:
            row = conn.execute(statement).first()
        return row[0] if row else None

    def find_user_id_by_email(self, email: Optional[str]) -> Optional[int]:
        if email is None or not str(email).strip():
            return None
        statement = (select(users.c.id)
                     .join(user_emails, user_emails.c.user_id == users.c.id)
                     .where(user_emails.c.email == email))
        return self._first_id(statement, 'email lookup')

    def find_user_id_by_field(self, field: LocalField, value: Any) -> Optional[int]:
        if field is LocalField.EMAIL:
            return self.find_user_id_by_email(value)
        if value is None or value == '':
            return None
        statement = select(users.c.id).where(FIELD_COLUMNS[field] == value)
        return self._first_id(statement, f'{field.value} lookup')

    def find_user_id_by_name(self, name: Optional[str]) -> Optional[int]:
        return self.find_user_id_by_field(LocalField.NAME, name)

    def get_user(self, user_id: int) -> Optional[LocalUserRecord]:
        """Load one account regardless of its auth type."""
        with store_errors('user load'), self.engine.connect() as conn:
            row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
            if row is None:
                return None
            emails = conn.execute(
                select(user_emails.c.email)
                .where(user_emails.c.user_id == user_id)
                .order_by(user_emails.c.is_default.desc(), user_emails.c.id)
            ).scalars().all()
        return LocalUserRecord(row['id'], row['name'], row['authtype'], bool(row['is_active']),
                               row['supervisor_id'], tuple(emails))

    def update_supervisor(self, user_id: int, supervisor_id: int) -> bool:
        with store_errors('supervisor update'), self.engine.begin() as conn:
            current = conn.execute(select(users.c.supervisor_id).where(users.c.id == user_id)).first()
            if current is None:
                raise StoreError(f"supervisor update failed: no user with id {user_id}")
            if current[0] == supervisor_id:
                return False
            conn.execute(update(users).where(users.c.id == user_id).values(supervisor_id=supervisor_id))
        return True

    def write_profile(self, user_id: int, profile: Dict[str, Any]):
        values = {}
        for key, value in profile.items():
            if key == self.groups_field:
                values[users.c.groups.name] = list(value)
                continue
            try:
                field = LocalField(key)
            except ValueError:
                raise StoreError(f"profile write failed: unknown attribute {key}")
            if field in FIELD_COLUMNS:
                values[FIELD_COLUMNS[field].name] = value

        email = profile.get(LocalField.EMAIL.value)

        with store_errors('profile write'), self.engine.begin() as conn:
            if values:
                result = conn.execute(update(users).where(users.c.id == user_id).values(**values))
                if result.rowcount == 0:
                    raise StoreError(f"profile write failed: no user with id {user_id}")
            if email:
                self._set_default_email(conn, user_id, email)

    def _set_default_email(self, conn, user_id: int, email: str):
        existing = conn.execute(
            select(user_emails.c.id, user_emails.c.is_default)
            .where(user_emails.c.user_id == user_id, user_emails.c.email == email)
        ).first()
        if existing is not None and existing.is_default:
            return

        conn.execute(update(user_emails).where(user_emails.c.user_id == user_id).values(is_default=False))
        if existing is not None:
            conn.execute(update(user_emails).where(user_emails.c.id == existing.id).values(is_default=True))
        else:
            conn.execute(insert(user_emails).values(user_id=user_id, email=email, is_default=True))

    def list_accounts(self, auth_types: Iterable[int]) -> List[LocalUserRecord]:
        auth_types = [int(auth_type) for auth_type in auth_types]
        with store_errors('account listing'), self.engine.connect() as conn:
            rows = conn.execute(
                select(users.c.id, users.c.name, users.c.authtype, users.c.is_active, users.c.supervisor_id)
                .where(users.c.authtype.in_(auth_types))
                .order_by(users.c.id)
            ).all()
            emails: Dict[int, List[str]] = {}
            for user_id, email in conn.execute(
                select(user_emails.c.user_id, user_emails.c.email)
                .join(users, users.c.id == user_emails.c.user_id)
                .where(users.c.authtype.in_(auth_types))
                .order_by(user_emails.c.id)
            ):
                emails.setdefault(user_id, []).append(email)

        return [LocalUserRecord(row.id, row.name, row.authtype, bool(row.is_active), row.supervisor_id,
                                tuple(emails.get(row.id, ())))
                for row in rows]

    def set_active(self, user_id: int, active: bool):
        with store_errors('activation update'), self.engine.begin() as conn:
            conn.execute(update(users).where(users.c.id == user_id).values(is_active=active))


class SqlConfigStore:
    """
    Flat key/value configuration table.

    Values are read wholesale; writes only accept known keys. The API key is
    stored as a Fernet token and is never returned decrypted.
    """

    CONNECTION_KEYS = ('url', 'api_key')

    def __init__(self, engine: Engine, secret_key: Optional[str] = None):
        self.engine = engine
        self.secret_key = secret_key

    @staticmethod
    def is_known_key(key: str) -> bool:
        if key in SqlConfigStore.CONNECTION_KEYS or key in FLAT_KEYS:
            return True
        for prefix in ('use_norm_', 'norm_', 'use_filter_', 'filter_'):
            if key.startswith(prefix):
                return key[len(prefix):] in {f.value for f in LocalField}
        return False

    def get_config_values(self) -> Dict[str, str]:
        """Return every stored value keyed by name."""
        with store_errors('config read'), self.engine.connect() as conn:
            rows = conn.execute(select(sync_config.c.name, sync_config.c.value)).all()
        return {name: value for name, value in rows}

    def update_config_values(self, values: Dict[str, Any]) -> List[str]:
        """
        Save known keys, ignoring anything else.

        Args:
            values: Flat key/value pairs

        Returns:
            Names of the keys that were written

        Raises:
            ConfigurationError: If an API key is given but no secret key is configured
        """
        to_write = {}
        for key, value in values.items():
            if not self.is_known_key(key):
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue
            if isinstance(value, bool):
                value = '1' if value else '0'
            if key == 'api_key' and value:
                if not self.secret_key:
                    raise ConfigurationError("Cannot store an API key without a secret key (IDP_SECRET_KEY)")
                value = encrypt_secret(str(value), self.secret_key)
            to_write[key] = None if value is None else str(value)

        with store_errors('config write'), self.engine.begin() as conn:
            existing = set(conn.execute(
                select(sync_config.c.name).where(sync_config.c.name.in_(list(to_write)))
            ).scalars())
            for key, value in to_write.items():
                if key in existing:
                    conn.execute(update(sync_config).where(sync_config.c.name == key).values(value=value))
                else:
                    conn.execute(insert(sync_config).values(name=key, value=value))

        logger.info(f"Saved configuration keys: {', '.join(sorted(to_write)) or 'none'}")
        return sorted(to_write)

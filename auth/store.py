"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AccountStore owns users, roles and API keys; SecretStore owns the
short-lived secret records (magic-link tokens, password reset tokens,
one-time codes). The _row_to_* functions are the mappers. Service and
route code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only hashes of secrets are ever written (see auth/credentials.py and
  auth/passwords.py).

  Single use is enforced in SQL: mark_magic_link_used() is a conditional
  UPDATE ... WHERE used = 0, so of two concurrent verifications of the same
  token exactly one sees rowcount == 1.

Timestamps are ISO 8601 UTC strings with microsecond precision, so string
comparison in SQL orders them chronologically.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    event,
    func,
    inspect,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import ApiKey, MagicLinkToken, OneTimeCode, PasswordResetToken, Role, User
from core.config import _DEFAULT_DB_URL

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("picture", Text),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("hashed_password", Text),  # NULL for passwordless accounts
    Column("created_at", String(40), nullable=False),
    Column("last_login", String(40)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", Text),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, nullable=False, index=True),
    Column("role_id", Integer, nullable=False),
    UniqueConstraint("user_id", "role_id"),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(12), nullable=False),  # display only
    Column("created_at", String(40), nullable=False),
    Column("last_used", String(40)),
)

_magic_links = Table(
    "magic_link_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("lookup_key", String(16), nullable=False, index=True),
    Column("expires_at", String(40), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("used_at", String(40)),
)

_password_resets = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(40), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("used_at", String(40)),
)

_otp_codes = Table(
    "otp_codes",
    _metadata,
    Column("user_id", Integer, primary_key=True),  # one live code per account
    Column("code_hash", String(64), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("last_sent_at", String(40), nullable=False),
    Column("created_at", String(40), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Accounts, roles, API keys
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for User, Role and ApiKey entities.

    Usage:
        store = AccountStore()
        store.ensure_roles(["user", "admin"])
        uid = store.create_user(User(email="a@example.com", roles=["user"]))
        user = store.get_by_email("a@example.com")
        store.close()
    """

    # Columns update_user() accepts. Anything else is a programming error.
    _USER_FIELDS: frozenset = frozenset(
        {"first_name", "last_name", "picture", "email_verified", "is_active", "hashed_password", "last_login"}
    )

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = _make_engine(db_url)
        self._ensure_hashed_password_column()

    def _ensure_hashed_password_column(self) -> None:
        """Add users.hashed_password to databases created before password login existed.

        create_all() never alters an existing table, so the column is added
        here when the inspector does not report it.
        """
        columns = {column["name"] for column in inspect(self.engine).get_columns("users")}
        if "hashed_password" not in columns:
            with self.engine.begin() as conn:
                conn.execute(text("ALTER TABLE users ADD COLUMN hashed_password TEXT"))

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user (and its role links) and return the new ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Role names that have no roles row are ignored.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    picture=user.picture,
                    email_verified=1 if user.email_verified else 0,
                    is_active=1 if user.is_active else 0,
                    hashed_password=user.hashed_password,
                    created_at=_now_iso(),
                )
            )
            user_id = result.inserted_primary_key[0]
            self._link_roles(conn, user_id, user.roles)
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact (already normalized) email."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
            return _row_to_user(row, self._role_names(conn, row.id)) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return _row_to_user(row, self._role_names(conn, row.id)) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable columns and/or roles on a user.

        Accepted fields: first_name, last_name, picture, email_verified,
        is_active, hashed_password, last_login, and roles (list of role names,
        replaces the current set). Returns True if the user exists.
        """
        roles = fields.pop("roles", None)
        unknown = set(fields) - self._USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for flag in ("email_verified", "is_active"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        with self.engine.begin() as conn:
            exists = conn.execute(select(_users.c.id).where(_users.c.id == user_id)).fetchone() is not None
            if not exists:
                return False
            if fields:
                conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            if roles is not None:
                conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
                self._link_roles(conn, user_id, roles)
        return True

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def ensure_roles(self, names: list[str]) -> None:
        """Create any role in names that does not exist yet. Idempotent."""
        with self.engine.begin() as conn:
            existing = {r.name for r in conn.execute(select(_roles.c.name)).fetchall()}
            for name in names:
                if name not in existing:
                    conn.execute(_roles.insert().values(name=name))

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return Role(id=row.id, name=row.name, description=row.description) if row is not None else None

    def set_user_roles(self, user_id: int, names: list[str]) -> None:
        """Replace the user's role set with names."""
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            self._link_roles(conn, user_id, names)

    def _link_roles(self, conn, user_id: int, names: list[str]) -> None:
        if not names:
            return
        rows = conn.execute(select(_roles.c.id).where(_roles.c.name.in_(list(names)))).fetchall()
        for row in rows:
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=row.id))

    def _role_names(self, conn, user_id: int) -> list[str]:
        rows = conn.execute(
            select(_roles.c.name)
            .select_from(_user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id))
            .where(_user_roles.c.user_id == user_id)
            .order_by(_roles.c.name)
        ).fetchall()
        return [r.name for r in rows]

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> int:
        """Insert a new API key record and return its ID."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    user_id=api_key.user_id,
                    name=api_key.name,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up an API key by its HMAC hash. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def get_api_key(self, key_id: int) -> ApiKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys(self, user_id: int | None = None) -> list[ApiKey]:
        """Return API keys (newest first), optionally only those owned by user_id."""
        query = _api_keys.select().order_by(_api_keys.c.id.desc())
        if user_id is not None:
            query = query.where(_api_keys.c.user_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def revoke_api_key(self, key_id: int) -> bool:
        """Delete a key. Returns True if a key was removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_api_keys.delete().where(_api_keys.c.id == key_id))
        return result.rowcount > 0

    def update_api_key_last_used(self, key_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used=_now_iso()))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Secret records
# ---------------------------------------------------------------------------


class SecretStore:
    """Repository for MagicLinkToken, PasswordResetToken and OneTimeCode records.

    Callers pass `now` explicitly so expiry is decided by the service clock,
    not the database clock.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = _make_engine(db_url)

    # ------------------------------------------------------------------
    # Magic links
    # ------------------------------------------------------------------

    def create_magic_link(self, token: MagicLinkToken) -> int:
        """Insert token after deleting every unused token for the same email.

        Both statements run in one transaction, so at most one unused token
        per email is ever visible.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _magic_links.delete().where(and_(_magic_links.c.email == token.email, _magic_links.c.used == 0))
            )
            result = conn.execute(
                _magic_links.insert().values(
                    email=token.email,
                    token_hash=token.token_hash,
                    lookup_key=token.lookup_key,
                    expires_at=_iso(token.expires_at),
                    used=0,
                    created_at=_iso(token.created_at or datetime.now(timezone.utc)),
                )
            )
            return result.inserted_primary_key[0]

    def find_active_magic_links(self, now: datetime, lookup_key: str | None = None) -> list[MagicLinkToken]:
        """Return unused, unexpired tokens, narrowed to lookup_key when given."""
        conditions = [_magic_links.c.used == 0, _magic_links.c.expires_at > _iso(now)]
        if lookup_key is not None:
            conditions.append(_magic_links.c.lookup_key == lookup_key)
        with self.engine.connect() as conn:
            rows = conn.execute(_magic_links.select().where(and_(*conditions))).fetchall()
        return [_row_to_magic_link(r) for r in rows]

    def get_magic_link(self, token_id: int) -> MagicLinkToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_magic_links.select().where(_magic_links.c.id == token_id)).fetchone()
        return _row_to_magic_link(row) if row is not None else None

    def list_magic_links(self, email: str) -> list[MagicLinkToken]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _magic_links.select().where(_magic_links.c.email == email).order_by(_magic_links.c.id)
            ).fetchall()
        return [_row_to_magic_link(r) for r in rows]

    def mark_magic_link_used(self, token_id: int, now: datetime) -> bool:
        """Consume a token. Returns False if it was already used (lost a race)."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _magic_links.update()
                .where(and_(_magic_links.c.id == token_id, _magic_links.c.used == 0))
                .values(used=1, used_at=_iso(now))
            )
        return result.rowcount == 1

    def delete_magic_link(self, token_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_magic_links.delete().where(_magic_links.c.id == token_id))

    def delete_magic_links_for(self, email: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_magic_links.delete().where(_magic_links.c.email == email))
        return result.rowcount

    def purge_magic_links(self, now: datetime) -> int:
        """Delete expired and used tokens. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _magic_links.delete().where((_magic_links.c.expires_at <= _iso(now)) | (_magic_links.c.used == 1))
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_password_reset(self, token: PasswordResetToken) -> int:
        """Insert token after deleting every unused reset token for the same user."""
        with self.engine.begin() as conn:
            conn.execute(
                _password_resets.delete().where(
                    and_(_password_resets.c.user_id == token.user_id, _password_resets.c.used == 0)
                )
            )
            result = conn.execute(
                _password_resets.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=_iso(token.expires_at),
                    used=0,
                    created_at=_iso(token.created_at or datetime.now(timezone.utc)),
                )
            )
            return result.inserted_primary_key[0]

    def get_password_reset_by_hash(self, token_hash: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_resets.select().where(_password_resets.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_password_reset(row) if row is not None else None

    def list_password_resets(self, user_id: int) -> list[PasswordResetToken]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _password_resets.select()
                .where(_password_resets.c.user_id == user_id)
                .order_by(_password_resets.c.id)
            ).fetchall()
        return [_row_to_password_reset(r) for r in rows]

    def mark_password_reset_used(self, token_id: int, now: datetime) -> bool:
        """Consume a reset token. Returns False if it was already used."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.update()
                .where(and_(_password_resets.c.id == token_id, _password_resets.c.used == 0))
                .values(used=1, used_at=_iso(now))
            )
        return result.rowcount == 1

    def delete_password_reset(self, token_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_password_resets.delete().where(_password_resets.c.id == token_id))

    def purge_password_resets(self, now: datetime) -> int:
        """Delete expired and used reset tokens. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.delete().where(
                    (_password_resets.c.expires_at <= _iso(now)) | (_password_resets.c.used == 1)
                )
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    def replace_otp(self, code: OneTimeCode) -> None:
        """Store code as the account's only live code, overwriting any prior one."""
        with self.engine.begin() as conn:
            conn.execute(_otp_codes.delete().where(_otp_codes.c.user_id == code.user_id))
            conn.execute(
                _otp_codes.insert().values(
                    user_id=code.user_id,
                    code_hash=code.code_hash,
                    expires_at=_iso(code.expires_at),
                    attempts=code.attempts,
                    last_sent_at=_iso(code.last_sent_at),
                    created_at=_iso(code.created_at or code.last_sent_at),
                )
            )

    def get_otp(self, user_id: int) -> OneTimeCode | None:
        with self.engine.connect() as conn:
            row = conn.execute(_otp_codes.select().where(_otp_codes.c.user_id == user_id)).fetchone()
        return _row_to_otp(row) if row is not None else None

    def increment_otp_attempts(self, user_id: int) -> int:
        """Add one to the attempt counter atomically; returns the new value."""
        with self.engine.begin() as conn:
            conn.execute(
                _otp_codes.update()
                .where(_otp_codes.c.user_id == user_id)
                .values(attempts=_otp_codes.c.attempts + 1)
            )
            value = conn.execute(select(_otp_codes.c.attempts).where(_otp_codes.c.user_id == user_id)).scalar()
        return value or 0

    def delete_otp(self, user_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_otp_codes.delete().where(_otp_codes.c.user_id == user_id))
        return result.rowcount > 0

    def purge_expired_otps(self, now: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_otp_codes.delete().where(_otp_codes.c.expires_at < _iso(now)))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: list[str]) -> User:
    return User(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        picture=row.picture,
        email_verified=bool(row.email_verified),
        roles=roles,
        is_active=bool(row.is_active),
        hashed_password=row.hashed_password,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        created_at=row.created_at,
        last_used=row.last_used,
    )


def _row_to_magic_link(row) -> MagicLinkToken:
    return MagicLinkToken(
        id=row.id,
        email=row.email,
        token_hash=row.token_hash,
        lookup_key=row.lookup_key,
        expires_at=_parse(row.expires_at),
        used=bool(row.used),
        created_at=_parse(row.created_at),
        used_at=_parse(row.used_at),
    )


def _row_to_otp(row) -> OneTimeCode:
    return OneTimeCode(
        user_id=row.user_id,
        code_hash=row.code_hash,
        expires_at=_parse(row.expires_at),
        attempts=row.attempts,
        last_sent_at=_parse(row.last_sent_at),
        created_at=_parse(row.created_at),
    )


def _row_to_password_reset(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=_parse(row.expires_at),
        used=bool(row.used),
        created_at=_parse(row.created_at),
        used_at=_parse(row.used_at),
    )

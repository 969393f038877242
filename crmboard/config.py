# crmboard: configuration
# Override defaults via crmboard.yaml (or $CRMBOARD_CONFIG). Secrets are read
# from the environment variables the config names, never from the file.

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .attachments import AttachmentUploader, ContactAttachments, LocalDirectoryStorage, SupabaseStorage
from .backends import RestTableBackend, SqliteTableBackend, TableBackend
from .board import BoardController, BoardLayout
from .errors import ConfigError
from .gateway import ContactGateway, TaskGateway
from .preferences import PreferenceStore
from .query import ContactQueries, Notifier, QueryCache, QueryClient, TaskQueries

logger = logging.getLogger(__name__)

CONFIG_PATH = Path.cwd() / "crmboard.yaml"


@dataclass
class CRMConfig:
    """Runtime configuration."""

    # Table store: "sqlite" (local file) or "rest" (PostgREST / Supabase)
    backend: str = "sqlite"
    db_path: str = "~/.local/share/crmboard/crm.db"
    store_url: str = ""
    api_key_env: str = "CRMBOARD_STORE_KEY"
    access_token_env: str = "CRMBOARD_ACCESS_TOKEN"
    request_timeout: float = 10.0

    # Session: rows are owned by this user
    user_id: str = "local-user"

    # File storage: "local" (directory) or "supabase"
    storage: str = "local"
    storage_dir: str = "~/.local/share/crmboard/files"
    storage_bucket: str = "contact-files"
    public_base_url: str = "http://localhost:3000"
    max_upload_bytes: int = 5 * 1024 * 1024

    # Preferences (task view)
    prefs_path: str = "~/.local/share/crmboard/prefs.db"

    # Board
    drag_threshold_px: float = 8.0

    # HTTP API
    host: str = "127.0.0.1"
    port: int = 3000
    api_secret_env: str = "CRMBOARD_API_SECRET"

    log_level: str = "INFO"

    def resolve_paths(self):
        """Expand ~ in every path setting."""
        self.db_path = str(Path(self.db_path).expanduser())
        self.storage_dir = str(Path(self.storage_dir).expanduser())
        self.prefs_path = str(Path(self.prefs_path).expanduser())

    def secret(self, env_name: str) -> Optional[str]:
        return os.environ.get(env_name) or None

    @property
    def api_key(self) -> Optional[str]:
        return self.secret(self.api_key_env)

    @property
    def access_token(self) -> Optional[str]:
        return self.secret(self.access_token_env)

    @property
    def api_secret(self) -> str:
        return self.secret(self.api_secret_env) or ""

    @classmethod
    def load(cls, path: Optional[str] = None) -> "CRMConfig":
        """Load config from YAML file, falling back to defaults."""
        env_path = os.environ.get("CRMBOARD_CONFIG")
        cfg_path = Path(path or env_path) if (path or env_path) else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                cfg = cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
            except (yaml.YAMLError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
                cfg = cls()
        else:
            cfg = cls()
        cfg.resolve_paths()
        return cfg


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [crmboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


@dataclass
class Services:
    """Everything a front end needs, wired from one config."""
    config: CRMConfig
    backend: TableBackend
    notifier: Notifier
    client: QueryClient
    contacts: ContactQueries
    tasks: TaskQueries
    attachments: ContactAttachments
    preferences: PreferenceStore
    board: BoardController


def build_backend(cfg: CRMConfig) -> TableBackend:
    if cfg.backend == "sqlite":
        return SqliteTableBackend(cfg.db_path, user_id=cfg.user_id)
    if cfg.backend == "rest":
        if not cfg.store_url:
            raise ConfigError("backend 'rest' requires store_url")
        if not cfg.api_key:
            raise ConfigError(
                f"Environment variable {cfg.api_key_env} is not set.\n"
                f"Set it:  export {cfg.api_key_env}=your_store_anon_key"
            )
        return RestTableBackend(
            cfg.store_url,
            cfg.api_key,
            access_token=cfg.access_token,
            user_id=cfg.user_id,
            timeout=cfg.request_timeout,
        )
    raise ConfigError(f"Unknown backend: {cfg.backend}. Available: sqlite, rest")


def build_storage(cfg: CRMConfig):
    if cfg.storage == "local":
        return LocalDirectoryStorage(cfg.storage_dir, cfg.public_base_url, cfg.storage_bucket)
    if cfg.storage == "supabase":
        if not cfg.store_url or not cfg.api_key:
            raise ConfigError("storage 'supabase' requires store_url and an api key")
        return SupabaseStorage(
            cfg.store_url,
            cfg.api_key,
            bucket=cfg.storage_bucket,
            access_token=cfg.access_token,
            timeout=cfg.request_timeout,
        )
    raise ConfigError(f"Unknown storage: {cfg.storage}. Available: local, supabase")


def build_services(cfg: Optional[CRMConfig] = None) -> Services:
    cfg = cfg or CRMConfig.load()
    backend = build_backend(cfg)
    notifier = Notifier()
    client = QueryClient(QueryCache(), notifier)
    contacts = ContactQueries(client, ContactGateway(backend))
    tasks = TaskQueries(client, TaskGateway(backend))
    uploader = AttachmentUploader(build_storage(cfg), notifier, max_bytes=cfg.max_upload_bytes)
    services = Services(
        config=cfg,
        backend=backend,
        notifier=notifier,
        client=client,
        contacts=contacts,
        tasks=tasks,
        attachments=ContactAttachments(uploader, contacts, cfg.user_id),
        preferences=PreferenceStore(cfg.prefs_path),
        board=BoardController(tasks, BoardLayout.grid(threshold=cfg.drag_threshold_px)),
    )
    logger.info(f"Services ready (backend={cfg.backend}, storage={cfg.storage})")
    return services

#!/usr/bin/env python3
"""
Slice Machine models → Prismic Custom Types API

Goals:
- Local JSON models (customtypes/**/index.json, <library>/**/model.json) are the source of truth.
- Fetch the remote custom types and shared slices, diff against local, push one bulk update.
- Users only edit .env for credentials (REPO, CT_API_TOKEN, PRISMIC_EMAIL, PRISMIC_PASSWORD).
"""
from __future__ import annotations

import os
import sys
import json
import logging
import threading
from pathlib import Path
from dataclasses import dataclass, field, asdict
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_EXCEPTION
from typing import Callable, Dict, List, Optional, Type, TypeVar, Union

import requests
from dotenv import load_dotenv
import yaml

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

AUTH_URL = 'https://auth.prismic.io/login'
CUSTOM_TYPES_API_URL = 'https://customtypes.prismic.io'
USER_AGENT = 'sm-api'

PROJECT_CONFIG_FILE = 'slicemachine.config.json'
CUSTOM_TYPES_DIR = 'customtypes'
CUSTOM_TYPE_FILE = 'index.json'
SLICE_FILE = 'model.json'
DEFAULT_LIBRARIES = ['./slices']

SUPPORTED_ADAPTERS = (
    '@slicemachine/adapter-next',
    '@slicemachine/adapter-nuxt',
    '@slicemachine/adapter-sveltekit',
)


class ConfigError(Exception):
    pass


class UnsupportedAdapterError(ConfigError):
    def __init__(self, adapter: str):
        super().__init__(f"Unsupported adapter: {adapter}")
        self.adapter = adapter


class ModelError(Exception):
    pass


class PrismicError(Exception):
    pass


def _truthy(value: Optional[str]) -> bool:
    return str(value or '').strip().lower() in ("1", "true", "yes", "y")


@dataclass
class Config:
    repository: str
    api_token: str
    email: str
    password: str
    project_root: Path = field(default_factory=Path.cwd)
    auth_url: str = AUTH_URL
    api_url: str = CUSTOM_TYPES_API_URL
    dry_run: bool = False
    plan_file: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "Config":
        load_dotenv(override=False)
        wanted = {
            'REPO': 'repository',
            'CT_API_TOKEN': 'api_token',
            'PRISMIC_EMAIL': 'email',
            'PRISMIC_PASSWORD': 'password',
        }
        data: Dict[str, object] = {}
        missing: List[str] = []
        for k, a in wanted.items():
            v = os.getenv(k, '')
            if not v:
                missing.append(k)
            data[a] = v
        # Absent values are passed through; the remote side rejects them
        if missing:
            logger.warning("Empty env: %s", ", ".join(missing))

        if root := os.getenv('PROJECT_ROOT'):
            data['project_root'] = Path(root)
        if auth_url := os.getenv('PRISMIC_AUTH_URL'):
            data['auth_url'] = auth_url
        if api_url := os.getenv('CUSTOM_TYPES_API_URL'):
            data['api_url'] = api_url.rstrip('/')
        data['dry_run'] = _truthy(os.getenv('DRY_RUN'))
        if plan := os.getenv('PLAN_FILE'):
            data['plan_file'] = Path(plan)
        return cls(**data)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

@dataclass
class CustomType:
    id: str
    data: dict

    KIND = 'CustomType'


@dataclass
class SharedSlice:
    id: str
    data: dict

    KIND = 'Slice'


Model = Union[CustomType, SharedSlice]
M = TypeVar('M', CustomType, SharedSlice)


@dataclass
class ModelSet:
    custom_types: List[CustomType] = field(default_factory=list)
    slices: List[SharedSlice] = field(default_factory=list)


@dataclass
class Change:
    type: str
    id: str
    payload: dict


@dataclass
class AdapterLayout:
    adapter: str
    custom_types_dir: Path
    library_dirs: List[Path]


@dataclass
class UnsupportedAdapter:
    adapter: str


def _model_from_json(model_cls: Type[M], doc: object, path: Path) -> M:
    if not isinstance(doc, dict) or not isinstance(doc.get('id'), str):
        raise ModelError(f"{path}: model has no string 'id'")
    return model_cls(id=doc['id'], data=doc)


# ---------------------------------------------------------------------------
# Concurrency helper
# ---------------------------------------------------------------------------

def gather(*calls: Callable[[], object]) -> List[object]:
    """Run calls on worker threads and return their results in call order.

    The first exception is re-raised as soon as it happens; calls that have not
    started are cancelled and results of the others are discarded.
    """
    if not calls:
        return []
    pool = ThreadPoolExecutor(max_workers=len(calls))
    try:
        futures = [pool.submit(c) for c in calls]
        done, _ = wait(futures, return_when=FIRST_EXCEPTION)
        for fut in futures:
            if fut in done and fut.exception() is not None:
                raise fut.exception()  # type: ignore[misc]
        return [f.result() for f in futures]
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def login(cfg: Config, session: Optional[requests.Session] = None) -> str:
    """Exchange email/password for a bearer token (response body, verbatim)."""
    http = session or requests.Session()
    logger.info('Logging in as %s', cfg.email or '<empty>')
    try:
        r = http.post(
            cfg.auth_url,
            headers={'Content-Type': 'application/json'},
            data=json.dumps({'email': cfg.email, 'password': cfg.password}),
        )
        r.raise_for_status()
    except requests.RequestException as e:
        raise PrismicError(f"login failed: {e}")
    return r.text


# ---------------------------------------------------------------------------
# Project config / adapter
# ---------------------------------------------------------------------------

def read_project_config(root: Path) -> dict:
    path = root / PROJECT_CONFIG_FILE
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"{path} not found")
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON ({e})")
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object")
    return data


def adapter_name(project: dict) -> str:
    adapter = project.get('adapter')
    # Adapters can be declared with options: {"resolve": "<name>", "options": {...}}
    if isinstance(adapter, dict):
        adapter = adapter.get('resolve')
    return str(adapter or '')


def resolve_adapter(project: dict, root: Path) -> Union[AdapterLayout, UnsupportedAdapter]:
    name = adapter_name(project)
    if name not in SUPPORTED_ADAPTERS:
        return UnsupportedAdapter(name)
    libraries = project.get('libraries') or DEFAULT_LIBRARIES
    if not isinstance(libraries, list) or not all(isinstance(lib, str) for lib in libraries):
        raise ConfigError(f"libraries must be a list of paths, got {libraries!r}")
    return AdapterLayout(
        adapter=name,
        custom_types_dir=root / CUSTOM_TYPES_DIR,
        library_dirs=[root / lib for lib in libraries],
    )


# ---------------------------------------------------------------------------
# Local models
# ---------------------------------------------------------------------------

def load_models(root: Path, file_name: str, model_cls: Type[M]) -> List[M]:
    """Parse every file named `file_name` below `root`, at any depth."""
    if not root.is_dir():
        raise ModelError(f"{root} does not exist")
    out: List[M] = []
    for path in root.rglob(file_name):
        if path.is_dir():
            continue
        try:
            doc = json.loads(path.read_text(encoding='utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ModelError(f"{path}: {e}")
        out.append(_model_from_json(model_cls, doc, path))
    return out


def load_local_models(layout: AdapterLayout) -> ModelSet:
    custom_types = load_models(layout.custom_types_dir, CUSTOM_TYPE_FILE, CustomType)
    per_library = gather(*[
        (lambda d=d: load_models(d, SLICE_FILE, SharedSlice)) for d in layout.library_dirs
    ])
    slices: List[SharedSlice] = [s for lib in per_library for s in lib]  # type: ignore[attr-defined]
    logger.info('Local: %d custom types, %d slices (%d libraries)',
                len(custom_types), len(slices), len(layout.library_dirs))
    return ModelSet(custom_types=custom_types, slices=slices)


# ---------------------------------------------------------------------------
# Remote
# ---------------------------------------------------------------------------

class CustomTypesClient:
    def __init__(self, cfg: Config, token: str, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.api = cfg.api_url.rstrip('/')
        self.session = session or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': USER_AGENT,
            'repository': cfg.repository,
            'Authorization': f"Bearer {token}",
        })
        self._count = 0
        self._count_lock = threading.Lock()

    def _req(self, method: str, path: str, **kw) -> requests.Response:
        url = f"{self.api}{path}"
        try:
            with self._count_lock:
                self._count += 1
            r = self.session.request(method, url, **kw)
            r.raise_for_status()
            return r
        except requests.RequestException as e:
            raise PrismicError(f"{method} {path}: {e}")

    def list_custom_types(self) -> List[CustomType]:
        docs = self._req('GET', '/customtypes').json()
        return [_model_from_json(CustomType, d, Path('/customtypes')) for d in docs]

    def list_slices(self) -> List[SharedSlice]:
        docs = self._req('GET', '/slices').json()
        return [_model_from_json(SharedSlice, d, Path('/slices')) for d in docs]

    def bulk_update(self, changes: List[Change]) -> None:
        self._req('POST', '/bulk-update', json={'changes': [asdict(c) for c in changes]})

    def stats(self) -> Dict[str, int]:
        return {"requests": self._count}


def fetch_remote_models(client: CustomTypesClient) -> ModelSet:
    custom_types, slices = gather(client.list_custom_types, client.list_slices)
    logger.info('Remote: %d custom types, %d slices', len(custom_types), len(slices))  # type: ignore[arg-type]
    return ModelSet(custom_types=custom_types, slices=slices)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------

def _by_id(models: List[Model], kind: str) -> Dict[str, Model]:
    out: Dict[str, Model] = {}
    for m in models:
        if m.id in out:
            logger.warning('Duplicate %s id %r, keeping the last definition', kind, m.id)
        out[m.id] = m
    return out


def _diff(existing: List[Model], desired: List[Model], kind: str):
    have = _by_id(existing, kind)
    want = _by_id(desired, kind)
    inserts: List[Change] = []
    updates: List[Change] = []
    deletes: List[Change] = []
    for mid, m in want.items():
        if mid not in have:
            inserts.append(Change(f"{kind}Insert", mid, m.data))
        elif have[mid].data != m.data:
            updates.append(Change(f"{kind}Update", mid, m.data))
    for mid in have:
        if mid not in want:
            deletes.append(Change(f"{kind}Delete", mid, {'id': mid}))
    return inserts, updates, deletes


def build_transaction(existing: ModelSet, desired: ModelSet) -> List[Change]:
    """Changes turning `existing` into `desired`.

    Slices are created before the custom types that may reference them and
    deleted after them.
    """
    ct_ins, ct_upd, ct_del = _diff(existing.custom_types, desired.custom_types, CustomType.KIND)  # type: ignore[arg-type]
    sl_ins, sl_upd, sl_del = _diff(existing.slices, desired.slices, SharedSlice.KIND)  # type: ignore[arg-type]
    return sl_ins + sl_upd + ct_ins + ct_upd + ct_del + sl_del


def summarize(changes: List[Change]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for c in changes:
        counts[c.type] = counts.get(c.type, 0) + 1
    return counts


def write_plan(changes: List[Change], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    plan = {
        'summary': summarize(changes),
        'changes': [{'type': c.type, 'id': c.id} for c in changes],
    }
    with open(path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(plan, f, sort_keys=False, allow_unicode=True)
    logger.info('Plan written to %s', path)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def sync(cfg: Config, session_factory: Callable[[], requests.Session] = requests.Session) -> List[Change]:
    # Adapter gate runs before login so an unsupported project makes no network call
    project = read_project_config(cfg.project_root)
    layout = resolve_adapter(project, cfg.project_root)
    if isinstance(layout, UnsupportedAdapter):
        raise UnsupportedAdapterError(layout.adapter)
    logger.info('Adapter %s', layout.adapter)

    token = login(cfg, session_factory()) or cfg.api_token
    client = CustomTypesClient(cfg, token, session_factory())
    desired, existing = gather(lambda: load_local_models(layout), lambda: fetch_remote_models(client))
    changes = build_transaction(existing, desired)  # type: ignore[arg-type]

    summary = summarize(changes)
    if summary:
        logger.info('Changes: %s', ', '.join(f"{k}={v}" for k, v in summary.items()))
    else:
        logger.info('Remote models already match local models')
    if cfg.plan_file:
        write_plan(changes, cfg.plan_file)

    if cfg.dry_run:
        logger.info('DRY_RUN set, skipping bulk update')
        return changes
    client.bulk_update(changes)
    logger.info('Bulk update applied (requests=%d)', client.stats()['requests'])
    return changes


def main() -> None:
    try:
        cfg = Config.from_env()
        sync(cfg)
    except (ConfigError, ModelError, PrismicError) as e:
        logger.error(str(e)); sys.exit(1)
    except KeyboardInterrupt:
        logger.info('Interrupted'); sys.exit(130)
    except Exception as e:
        logger.exception('Unexpected error: %s', e); sys.exit(1)


if __name__ == '__main__':
    main()

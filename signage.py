#!/usr/bin/env python3
import argparse
import enum
import json
import logging
import os
import re
import shutil
import signal
import socket
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests
from requests.exceptions import RequestException


DEFAULT_CONFIG = {
    "api_url": "",
    "assets_dir": "./assets/main",
    "clear_assets_on_start": True,
    "enable_progress_tracking": True,
    "max_retries": 3,
    "download_concurrency": 1,
    "download_delay_sec": 0.1,
    "request_timeout_sec": 15,
    "date_check_interval_sec": 60,
    "write_manifest_summary": True,
    "log_file": "",
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
    "status_file": "",
}

STREAM_FILETYPE = "stream"
STREAM_EXTENSION = ".m3u8"
FILETYPE_EXTENSIONS = {
    "stream": ".m3u8",
    "video": ".mp4",
    "audio": ".mp3",
    "image": ".jpg",
    "text": ".txt",
}
DEFAULT_EXTENSION = ".bin"
MANIFEST_SUMMARY_NAME = "webview-manifest.json"
MIN_TIMER_SEC = 1.0

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


class SignageError(Exception):
    pass


class TransportError(SignageError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Network error: Unable to fetch data from {url}")
        self.url = url


class HttpStatusError(SignageError):
    def __init__(self, status: int, status_text: str = "") -> None:
        super().__init__(f"HTTP error! status: {status} - {status_text}")
        self.status = status
        self.status_text = status_text


class SchemaCause(enum.Enum):
    INVALID_JSON = "invalid_json"
    NOT_OBJECT = "not_object"
    MISSING_FUNCTIONS = "missing_functions"
    INVALID_IS_RESTARTING = "invalid_is_restarting"
    MISSING_PLAYLISTS = "missing_playlists"
    INVALID_PLAYLIST = "invalid_playlist"
    INVALID_PLAYLIST_FIELD = "invalid_playlist_field"
    MISSING_ASSETS = "missing_assets"
    INVALID_ASSET = "invalid_asset"
    INVALID_ASSET_FIELD = "invalid_asset_field"


class SchemaError(SignageError):
    def __init__(self, cause: SchemaCause, location: str = "", detail: str = "") -> None:
        message = f"Invalid API response format: {cause.value}"
        if location:
            message += f" at {location}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
        self.cause = cause
        self.location = location


class AssetFetchError(SignageError):
    pass


class NoActivePlaylistError(SignageError):
    def __init__(self, message: str, next_playlist: Optional["PlaylistCycle"] = None) -> None:
        super().__init__(message)
        self.next_playlist = next_playlist


class EmptyCycleError(SignageError):
    pass


@dataclass(frozen=True)
class Asset:
    id: str
    name: str
    filepath: str
    filetype: str
    playing_order: int
    time: int


@dataclass(frozen=True)
class Playlist:
    id: str
    name: str
    is_default: bool
    assets: Tuple[Asset, ...]
    # Schedule fields are carried as sent; dates go through parse_timestamp.
    startdate: Optional[Any] = None
    enddate: Optional[Any] = None
    starttime: Optional[Any] = None
    endtime: Optional[Any] = None
    # Never consulted for activity.
    weekdays: Optional[Any] = None


@dataclass(frozen=True)
class Manifest:
    is_restarting: bool
    playlists: Tuple[Playlist, ...]

    def all_assets(self) -> List[Asset]:
        seen = set()
        assets: List[Asset] = []
        for playlist in self.playlists:
            for asset in playlist.assets:
                if asset.id in seen:
                    continue
                seen.add(asset.id)
                assets.append(asset)
        return assets


@dataclass(frozen=True)
class ManifestValidation:
    ok: bool
    manifest: Optional[Manifest] = None
    error: Optional[SchemaError] = None


@dataclass(frozen=True)
class FetchResult:
    asset: Asset
    success: bool
    local_path: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class WebviewAsset:
    id: str
    name: str
    filetype: str
    playing_order: int
    display_time: int
    display_path: str
    is_stream: bool
    original_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "filetype": self.filetype,
            "playing_order": self.playing_order,
            "displayTime": self.display_time,
            "displayPath": self.display_path,
            "isStream": self.is_stream,
            "originalPath": self.original_path,
        }


@dataclass(frozen=True)
class PlaylistCycle:
    playlist_id: str
    playlist_name: str
    assets: Tuple[WebviewAsset, ...]
    total_cycle_duration: int
    is_default: bool
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playlistId": self.playlist_id,
            "playlistName": self.playlist_name,
            "assets": [asset.to_dict() for asset in self.assets],
            "totalCycleDuration": self.total_cycle_duration,
            "isDefault": self.is_default,
            "startDate": self.start_date,
            "endDate": self.end_date,
        }


@dataclass(frozen=True)
class DownloadProgress:
    current: int
    total: int
    asset: Asset
    status: str


@dataclass(frozen=True)
class InitProgress:
    stage: str
    message: str
    progress: Optional[float] = None
    current: Optional[int] = None
    total: Optional[int] = None


@dataclass(frozen=True)
class InitializationStats:
    total_assets: int
    successful_downloads: int
    failed_downloads: int
    streams_kept: int
    total_playlists: int
    initialization_time_ms: int


@dataclass
class InitializationResult:
    success: bool
    device_name: Optional[str] = None
    manifest: Optional[Manifest] = None
    fetch_results: List[FetchResult] = field(default_factory=list)
    playlist_cycles: List[PlaylistCycle] = field(default_factory=list)
    default_playlist: Optional[PlaylistCycle] = None
    error: Optional[str] = None
    stats: Optional[InitializationStats] = None


ProgressCallback = Callable[[DownloadProgress], None]
InitProgressCallback = Callable[[InitProgress], None]
AssetChangeCallback = Callable[[WebviewAsset, int], None]
ErrorCallback = Callable[[str], None]


def load_config(path: str) -> Dict:
    abs_path = os.path.abspath(path)
    if not os.path.exists(abs_path):
        raise FileNotFoundError(f"Config not found: {path}")
    with open(abs_path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    cfg = resolve_config(data)
    config_dir = os.path.dirname(abs_path)
    for key in ("assets_dir", "log_file", "status_file"):
        value = cfg.get(key)
        if isinstance(value, str) and value:
            cfg[key] = resolve_path_from_base(config_dir, value)
    return cfg


def resolve_config(overrides: Optional[Dict] = None) -> Dict:
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(overrides or {})
    return cfg


def config_value(cfg: Dict, key: str) -> Any:
    if key in cfg:
        return cfg[key]
    return DEFAULT_CONFIG[key]


def resolve_path_from_base(base_dir: str, value: str) -> str:
    if not value:
        return value
    if os.path.isabs(value):
        return os.path.normpath(value)
    return os.path.normpath(os.path.join(base_dir, value))


def setup_logging(cfg: Dict) -> None:
    level = logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = cfg.get("log_file")
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=int(cfg.get("log_max_bytes") or 0),
                backupCount=int(cfg.get("log_backup_count") or 0),
            )
        )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
    )


def write_json_file(path: str, data: Dict, ensure_ascii: bool = True) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, ensure_ascii=ensure_ascii)
    os.replace(tmp_path, path)


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def parse_timestamp(value: object) -> Optional[float]:
    """Parse an ISO-8601 date or datetime into a UTC epoch timestamp.

    Naive values are read as UTC. Anything unparseable is logged and
    treated as if no bound were given.
    """
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        logging.warning("Ignoring non-string timestamp %r", value)
        return None
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        logging.warning("Ignoring unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def is_playlist_active(
    start_date: Optional[str],
    end_date: Optional[str],
    now_ts: Optional[float] = None,
) -> bool:
    now = time.time() if now_ts is None else now_ts
    start = parse_timestamp(start_date)
    if start is not None and start > now:
        return False
    end = parse_timestamp(end_date)
    if end is not None and end <= now:
        return False
    return True


def time_until_start(start_date: Optional[str], now_ts: Optional[float] = None) -> Optional[float]:
    start = parse_timestamp(start_date)
    if start is None:
        return None
    now = time.time() if now_ts is None else now_ts
    return max(0.0, start - now)


def time_until_end(end_date: Optional[str], now_ts: Optional[float] = None) -> Optional[float]:
    end = parse_timestamp(end_date)
    if end is None:
        return None
    now = time.time() if now_ts is None else now_ts
    return max(0.0, end - now)


def format_duration(seconds: float) -> str:
    total = int(max(seconds, 0))
    hours = total // 3600
    minutes = (total % 3600) // 60
    secs = total % 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def playlist_timing_message(
    playlist_name: str,
    start_date: Optional[str],
    end_date: Optional[str],
    now_ts: Optional[float] = None,
) -> str:
    now = time.time() if now_ts is None else now_ts
    start = parse_timestamp(start_date)
    if start is not None and start > now:
        return f'Playlist "{playlist_name}" starts in {format_duration(start - now)}'
    end = parse_timestamp(end_date)
    if end is not None and end <= now:
        return f'Playlist "{playlist_name}" has ended'
    if end is not None:
        return f'Playlist "{playlist_name}" ends in {format_duration(end - now)}'
    return f'Playlist "{playlist_name}" is active'


def sort_playlists_by_start_date(playlists: List[PlaylistCycle]) -> List[PlaylistCycle]:
    def _key(playlist: PlaylistCycle) -> Tuple[int, float]:
        start = parse_timestamp(playlist.start_date)
        if start is None:
            return (1, 0.0)
        return (0, start)

    return sorted(playlists, key=_key)


def next_scheduled_playlist(
    playlists: List[PlaylistCycle],
    now_ts: Optional[float] = None,
) -> Optional[PlaylistCycle]:
    now = time.time() if now_ts is None else now_ts
    future = []
    for playlist in playlists:
        start = parse_timestamp(playlist.start_date)
        if start is not None and start > now:
            future.append(playlist)
    if not future:
        return None
    return sort_playlists_by_start_date(future)[0]


def _required_text(value: object, allow_int: bool = False) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if allow_int and isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value != "":
        return value
    return None


def _required_int(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text, 10)
        except ValueError:
            return None
    return None


def _optional_field(value: object) -> Any:
    if value is None or value == "":
        return None
    return value


def _parse_asset(raw: object, location: str) -> Asset:
    if not isinstance(raw, dict):
        raise SchemaError(SchemaCause.INVALID_ASSET, location)
    values: Dict[str, Any] = {}
    for key in ("id", "name", "filepath", "filetype"):
        text = _required_text(raw.get(key), allow_int=key == "id")
        if text is None:
            raise SchemaError(SchemaCause.INVALID_ASSET_FIELD, f"{location}.{key}")
        values[key] = text
    for key in ("playing_order", "time"):
        number = _required_int(raw.get(key))
        if number is None:
            raise SchemaError(SchemaCause.INVALID_ASSET_FIELD, f"{location}.{key}", "expected integer")
        values[key] = number
    if values["time"] < 0:
        raise SchemaError(SchemaCause.INVALID_ASSET_FIELD, f"{location}.time", "must not be negative")
    return Asset(**values)


def _parse_playlist(raw: object, location: str) -> Playlist:
    if not isinstance(raw, dict):
        raise SchemaError(SchemaCause.INVALID_PLAYLIST, location)
    playlist_id = _required_text(raw.get("id"), allow_int=True)
    if playlist_id is None:
        raise SchemaError(SchemaCause.INVALID_PLAYLIST_FIELD, f"{location}.id")
    name = _required_text(raw.get("name"))
    if name is None:
        raise SchemaError(SchemaCause.INVALID_PLAYLIST_FIELD, f"{location}.name")
    is_default = raw.get("is_default")
    if not isinstance(is_default, bool):
        raise SchemaError(SchemaCause.INVALID_PLAYLIST_FIELD, f"{location}.is_default", "expected boolean")
    raw_assets = raw.get("assets")
    if not isinstance(raw_assets, list):
        raise SchemaError(SchemaCause.MISSING_ASSETS, f"{location}.assets")
    assets = tuple(
        _parse_asset(item, f"{location}.assets[{idx}]") for idx, item in enumerate(raw_assets)
    )
    optional = {
        key: _optional_field(raw.get(key))
        for key in ("startdate", "enddate", "starttime", "endtime", "weekdays")
    }
    return Playlist(id=playlist_id, name=name, is_default=is_default, assets=assets, **optional)


def _parse_manifest_strict(data: object) -> Manifest:
    if not isinstance(data, dict):
        raise SchemaError(SchemaCause.NOT_OBJECT)
    functions = data.get("functions")
    if not isinstance(functions, dict):
        raise SchemaError(SchemaCause.MISSING_FUNCTIONS, "functions")
    is_restarting = functions.get("is_restarting")
    if not isinstance(is_restarting, bool):
        raise SchemaError(SchemaCause.INVALID_IS_RESTARTING, "functions.is_restarting")
    raw_playlists = data.get("playlists")
    if not isinstance(raw_playlists, list):
        raise SchemaError(SchemaCause.MISSING_PLAYLISTS, "playlists")
    playlists = tuple(
        _parse_playlist(item, f"playlists[{idx}]") for idx, item in enumerate(raw_playlists)
    )
    return Manifest(is_restarting=is_restarting, playlists=playlists)


def validate_manifest(data: object) -> ManifestValidation:
    try:
        manifest = _parse_manifest_strict(data)
    except SchemaError as exc:
        return ManifestValidation(ok=False, error=exc)
    return ManifestValidation(ok=True, manifest=manifest)


def parse_manifest(data: object) -> Manifest:
    validation = validate_manifest(data)
    if not validation.ok:
        raise validation.error
    return validation.manifest


def fetch_manifest(api_url: str, timeout_sec: float = 15) -> Manifest:
    try:
        resp = requests.get(api_url, timeout=timeout_sec)
    except RequestException as exc:
        raise TransportError(api_url) from exc
    if not 200 <= resp.status_code < 300:
        raise HttpStatusError(resp.status_code, resp.reason or "")
    try:
        data = resp.json()
    except ValueError as exc:
        raise SchemaError(SchemaCause.INVALID_JSON, detail=str(exc)) from exc
    manifest = parse_manifest(data)
    if manifest.is_restarting:
        logging.info("Manifest requests a restart (functions.is_restarting=true)")
    return manifest


def is_stream_asset(asset: Asset) -> bool:
    return asset.filetype.lower() == STREAM_FILETYPE or STREAM_EXTENSION in asset.filepath.lower()


def extension_for_filetype(filetype: str) -> str:
    return FILETYPE_EXTENSIONS.get(filetype.lower(), DEFAULT_EXTENSION)


def safe_filename(asset: Asset) -> str:
    filename = asset.name
    if asset.filepath.startswith("http"):
        url_filename = urlparse(asset.filepath).path.split("/")[-1]
        if url_filename and "." in url_filename:
            filename = url_filename
    filename = _UNSAFE_FILENAME_CHARS.sub("_", filename)
    if "." not in filename:
        filename += extension_for_filetype(asset.filetype)
    asset_id = _UNSAFE_FILENAME_CHARS.sub("_", asset.id)
    return f"{asset_id}_{filename}"


def ensure_directory(path: str) -> None:
    if not os.path.isdir(path):
        os.makedirs(path, exist_ok=True)
        logging.info("Created directory: %s", path)


def probe_stream(url: str, timeout_sec: float) -> bool:
    try:
        resp = requests.head(url, timeout=timeout_sec, allow_redirects=True)
    except RequestException as exc:
        logging.warning("Stream validation failed for %s: %s", url, exc)
        return False
    if not 200 <= resp.status_code < 300:
        logging.warning("Stream validation failed for %s: status %s", url, resp.status_code)
        return False
    return True


def _download_file(cfg: Dict, asset: Asset) -> str:
    assets_dir = config_value(cfg, "assets_dir")
    timeout = config_value(cfg, "request_timeout_sec")
    dest = os.path.join(assets_dir, safe_filename(asset))
    tmp_path = f"{dest}.tmp"
    resp = requests.get(asset.filepath, stream=True, timeout=timeout)
    try:
        if not 200 <= resp.status_code < 300:
            raise AssetFetchError(f"HTTP error! status: {resp.status_code}")
        expected_size = None
        content_length = resp.headers.get("Content-Length")
        if content_length and content_length.isdigit():
            expected_size = int(content_length)
        bytes_written = 0
        with open(tmp_path, "wb") as fh:
            for chunk in resp.iter_content(chunk_size=1024 * 256):
                if chunk:
                    fh.write(chunk)
                    bytes_written += len(chunk)
        if expected_size is not None and bytes_written < expected_size:
            raise AssetFetchError(f"Incomplete download ({bytes_written}/{expected_size} bytes)")
        os.replace(tmp_path, dest)
    except (AssetFetchError, RequestException, OSError):
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError as cleanup_exc:
                logging.warning("Failed to cleanup temp file for %s: %s", asset.name, cleanup_exc)
        raise
    finally:
        resp.close()
    return dest


def download_asset(
    cfg: Dict,
    asset: Asset,
    retries: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
    position: Tuple[int, int] = (1, 1),
) -> FetchResult:
    """Fetch one asset, or keep it by reference when it is a stream.

    Never raises: after the last failed attempt the error is returned on
    the FetchResult so one bad asset cannot abort a batch.
    """
    max_attempts = max(int(retries if retries is not None else config_value(cfg, "max_retries")), 1)
    current, total = position

    def _notify(status: str) -> None:
        if on_progress is not None:
            on_progress(DownloadProgress(current=current, total=total, asset=asset, status=status))

    if is_stream_asset(asset):
        logging.info("Processing stream asset: %s (ID: %s)", asset.name, asset.id)
        _notify("downloading")
        probe_stream(asset.filepath, config_value(cfg, "request_timeout_sec"))
        logging.info("Stream asset kept as URL: %s", asset.name)
        _notify("completed")
        return FetchResult(asset=asset, success=True, local_path=asset.filepath)

    last_error = "Unknown error"
    for attempt in range(1, max_attempts + 1):
        if attempt > 1:
            logging.info("Processing asset: %s (ID: %s) (attempt %d/%d)", asset.name, asset.id, attempt, max_attempts)
        else:
            logging.info("Processing asset: %s (ID: %s)", asset.name, asset.id)
        _notify("downloading")
        try:
            local_path = _download_file(cfg, asset)
        except (AssetFetchError, RequestException, OSError) as exc:
            last_error = str(exc) or exc.__class__.__name__
            if attempt >= max_attempts:
                break
            wait_sec = 2 ** attempt
            logging.warning(
                "Attempt %d failed for %s: %s. Retrying in %ds...",
                attempt,
                asset.name,
                last_error,
                wait_sec,
            )
            sleep(wait_sec)
            continue
        logging.info("Downloaded: %s", os.path.basename(local_path))
        _notify("completed")
        return FetchResult(asset=asset, success=True, local_path=local_path)

    logging.error("Failed to process %s after %d attempts: %s", asset.name, max_attempts, last_error)
    _notify("failed")
    return FetchResult(asset=asset, success=False, error=last_error)


def log_fetch_summary(results: List[FetchResult]) -> None:
    failed = [r for r in results if not r.success]
    streams_kept = sum(1 for r in results if r.success and is_stream_asset(r.asset))
    files_downloaded = sum(1 for r in results if r.success and not is_stream_asset(r.asset))
    logging.info(
        "Processing complete: %d streams kept as URLs, %d files downloaded, %d failed",
        streams_kept,
        files_downloaded,
        len(failed),
    )
    for result in failed:
        logging.warning("Failed asset %s: %s", result.asset.name, result.error)


def download_all_assets(
    cfg: Dict,
    manifest: Manifest,
    on_progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> List[FetchResult]:
    ensure_directory(config_value(cfg, "assets_dir"))
    assets = manifest.all_assets()
    streams = sum(1 for asset in assets if is_stream_asset(asset))
    logging.info(
        "Processing %d assets: %d streams (keeping as URLs), %d files (downloading)",
        len(assets),
        streams,
        len(assets) - streams,
    )
    delay = float(config_value(cfg, "download_delay_sec") or 0)
    results: List[FetchResult] = []
    for idx, asset in enumerate(assets, start=1):
        results.append(
            download_asset(cfg, asset, on_progress=on_progress, sleep=sleep, position=(idx, len(assets)))
        )
        if delay > 0 and not is_stream_asset(asset):
            sleep(delay)
    log_fetch_summary(results)
    return results


def download_all_assets_parallel(
    cfg: Dict,
    manifest: Manifest,
    concurrency: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> List[FetchResult]:
    ensure_directory(config_value(cfg, "assets_dir"))
    assets = manifest.all_assets()
    batch_size = max(int(concurrency or config_value(cfg, "download_concurrency")), 1)
    batch_count = (len(assets) + batch_size - 1) // batch_size
    logging.info(
        "Starting parallel download of %d assets with concurrency %d...",
        len(assets),
        batch_size,
    )
    results: List[FetchResult] = []
    with ThreadPoolExecutor(max_workers=batch_size) as executor:
        for start in range(0, len(assets), batch_size):
            batch = assets[start:start + batch_size]
            futures = [
                executor.submit(
                    download_asset,
                    cfg,
                    asset,
                    None,
                    on_progress,
                    sleep,
                    (start + offset + 1, len(assets)),
                )
                for offset, asset in enumerate(batch)
            ]
            results.extend(future.result() for future in futures)
            logging.info("Completed batch %d/%d", start // batch_size + 1, batch_count)
    log_fetch_summary(results)
    return results


def fetch_assets(
    cfg: Dict,
    manifest: Manifest,
    on_progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> List[FetchResult]:
    concurrency = int(config_value(cfg, "download_concurrency") or 1)
    if concurrency > 1:
        return download_all_assets_parallel(cfg, manifest, concurrency, on_progress, sleep)
    return download_all_assets(cfg, manifest, on_progress, sleep)


def webview_asset(asset: Asset, local_path: Optional[str]) -> WebviewAsset:
    stream = is_stream_asset(asset)
    return WebviewAsset(
        id=asset.id,
        name=asset.name,
        filetype=asset.filetype,
        playing_order=asset.playing_order,
        display_time=asset.time,
        display_path=asset.filepath if stream else (local_path or ""),
        is_stream=stream,
        original_path=asset.filepath,
    )


def webview_asset_from_result(result: FetchResult) -> WebviewAsset:
    return webview_asset(result.asset, result.local_path)


def prepare_assets_for_webview(results: List[FetchResult]) -> List[WebviewAsset]:
    assets = [webview_asset_from_result(r) for r in results if r.success]
    return sorted(assets, key=lambda asset: asset.playing_order)


def prepare_playlists_for_cycling(manifest: Manifest, results: List[FetchResult]) -> List[PlaylistCycle]:
    succeeded: Dict[str, FetchResult] = {}
    for result in results:
        if result.success and result.asset.id not in succeeded:
            succeeded[result.asset.id] = result

    cycles: List[PlaylistCycle] = []
    for playlist in manifest.playlists:
        resolved = []
        for asset in playlist.assets:
            result = succeeded.get(asset.id)
            if result is None:
                continue
            resolved.append(webview_asset(asset, result.local_path))
        if not resolved:
            continue
        resolved.sort(key=lambda item: item.playing_order)
        cycles.append(
            PlaylistCycle(
                playlist_id=playlist.id,
                playlist_name=playlist.name,
                assets=tuple(resolved),
                total_cycle_duration=sum(item.display_time for item in resolved),
                is_default=playlist.is_default,
                start_date=playlist.startdate,
                end_date=playlist.enddate,
            )
        )
    return cycles


def build_webview_manifest(
    manifest: Manifest,
    results: List[FetchResult],
    cycles: Optional[List[PlaylistCycle]] = None,
) -> Dict[str, Any]:
    if cycles is None:
        cycles = prepare_playlists_for_cycling(manifest, results)
    all_assets = prepare_assets_for_webview(results)
    durations = [cycle.total_cycle_duration for cycle in cycles]
    default_playlist = next((cycle for cycle in cycles if cycle.is_default), None)
    return {
        "generatedDate": iso_now(),
        "totalAssets": len(results),
        "readyForPlayback": len(all_assets),
        "streams": sum(1 for asset in all_assets if asset.is_stream),
        "localFiles": sum(1 for asset in all_assets if not asset.is_stream),
        "playlists": [cycle.to_dict() for cycle in cycles],
        "assets": [asset.to_dict() for asset in all_assets],
        "cyclingInfo": {
            "defaultPlaylist": default_playlist.to_dict() if default_playlist else None,
            "totalPlaylists": len(cycles),
            "longestCycle": max(durations) if durations else None,
            "shortestCycle": min(durations) if durations else None,
        },
    }


def write_webview_manifest(
    cfg: Dict,
    manifest: Manifest,
    results: List[FetchResult],
    cycles: Optional[List[PlaylistCycle]] = None,
) -> str:
    if cycles is None:
        cycles = prepare_playlists_for_cycling(manifest, results)
    payload = build_webview_manifest(manifest, results, cycles)
    path = os.path.join(config_value(cfg, "assets_dir"), MANIFEST_SUMMARY_NAME)
    write_json_file(path, payload, ensure_ascii=False)
    logging.info("Webview manifest created: %s", path)
    for cycle in cycles:
        logging.info(
            "  %s (%s): %d assets, %ds total cycle time",
            cycle.playlist_name,
            "DEFAULT" if cycle.is_default else "CUSTOM",
            len(cycle.assets),
            cycle.total_cycle_duration,
        )
        if cycle.start_date:
            logging.info("    Start Date: %s", cycle.start_date)
        if cycle.end_date:
            logging.info("    End Date: %s", cycle.end_date)
    return path


class CycleScheduler:
    """Drives one PlaylistCycle forward in real time.

    Owns the current index and both timers. Timer callbacks carry a
    generation number so a timer that fires after being superseded does
    nothing.
    """

    IDLE = "idle"
    ACTIVE = "active"
    STOPPED = "stopped"

    def __init__(
        self,
        playlist: PlaylistCycle,
        on_asset_change: AssetChangeCallback,
        on_error: Optional[ErrorCallback] = None,
        date_check_interval_sec: float = 60.0,
        timer_factory: Callable[..., Any] = threading.Timer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.playlist = playlist
        self._on_asset_change = on_asset_change
        self._on_error = on_error
        self._date_check_interval = float(date_check_interval_sec)
        self._timer_factory = timer_factory
        self._clock = clock
        self._lock = threading.RLock()
        self._state = self.IDLE
        self._index = 0
        self._advance_timer: Optional[Any] = None
        self._date_timer: Optional[Any] = None
        self._advance_generation = 0
        self._date_generation = 0

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def current_index(self) -> int:
        with self._lock:
            return self._index

    def is_active(self) -> bool:
        return is_playlist_active(self.playlist.start_date, self.playlist.end_date, self._clock())

    def start(self) -> bool:
        with self._lock:
            if self._state == self.ACTIVE:
                logging.warning("Playlist %s is already cycling", self.playlist.playlist_name)
                return False
            if not self.playlist.assets:
                logging.warning("No assets to cycle through")
                return False
            if not self.is_active():
                logging.info(
                    "Playlist %s is not active due to date constraints",
                    self.playlist.playlist_name,
                )
                return False
            self._state = self.ACTIVE
            logging.info("Starting playlist %s", self.playlist.playlist_name)
            self._arm_date_check()
            self._show_current()
            return self._state == self.ACTIVE

    def stop(self) -> None:
        with self._lock:
            was_active = self._state == self.ACTIVE
            self._cancel_advance()
            self._cancel_date_check()
            self._state = self.STOPPED
        if was_active:
            logging.info("Stopped playlist %s", self.playlist.playlist_name)

    def advance(self) -> bool:
        with self._lock:
            if self._state != self.ACTIVE:
                return False
            self._index = (self._index + 1) % len(self.playlist.assets)
            self._show_current()
            return True

    def skip_to_asset(self, asset_id: str) -> bool:
        with self._lock:
            if self._state != self.ACTIVE:
                logging.warning("Cannot skip: playlist %s is not cycling", self.playlist.playlist_name)
                return False
            index = next(
                (idx for idx, asset in enumerate(self.playlist.assets) if asset.id == asset_id),
                None,
            )
            if index is None:
                return False
            self._cancel_advance()
            self._index = index
            self._show_current()
            return True

    def current_asset(self) -> Optional[WebviewAsset]:
        with self._lock:
            if not self.playlist.assets:
                return None
            return self.playlist.assets[self._index]

    def playlist_info(self) -> Dict[str, Any]:
        return {
            "name": self.playlist.playlist_name,
            "total_duration": self.playlist.total_cycle_duration,
            "asset_count": len(self.playlist.assets),
            "start_date": self.playlist.start_date,
            "end_date": self.playlist.end_date,
            "is_active": self.is_active(),
        }

    def date_status(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "is_active": is_playlist_active(self.playlist.start_date, self.playlist.end_date, now),
            "start_date": self.playlist.start_date,
            "end_date": self.playlist.end_date,
            "time_until_start": time_until_start(self.playlist.start_date, now),
            "time_until_end": time_until_end(self.playlist.end_date, now),
        }

    def timing_message(self) -> str:
        return playlist_timing_message(
            self.playlist.playlist_name,
            self.playlist.start_date,
            self.playlist.end_date,
            self._clock(),
        )

    def _show_current(self) -> None:
        asset = self.playlist.assets[self._index]
        logging.info("Displaying: %s for %ss", asset.name, asset.display_time)
        try:
            self._on_asset_change(asset, asset.display_time)
        except Exception as exc:
            logging.error("Presentation failed for %s: %s", asset.name, exc)
            self._cancel_advance()
            self._cancel_date_check()
            self._state = self.STOPPED
            if self._on_error is not None:
                self._on_error(str(exc))
            return
        self._arm_advance(asset)

    def _arm_advance(self, asset: WebviewAsset) -> None:
        self._cancel_advance()
        self._advance_generation += 1
        delay = max(float(asset.display_time), MIN_TIMER_SEC)
        timer = self._timer_factory(delay, self._on_advance_timer, args=(self._advance_generation,))
        timer.daemon = True
        timer.start()
        self._advance_timer = timer

    def _arm_date_check(self) -> None:
        self._cancel_date_check()
        self._date_generation += 1
        timer = self._timer_factory(
            self._date_check_interval,
            self._on_date_check_timer,
            args=(self._date_generation,),
        )
        timer.daemon = True
        timer.start()
        self._date_timer = timer

    def _cancel_advance(self) -> None:
        if self._advance_timer is not None:
            self._advance_timer.cancel()
            self._advance_timer = None
        self._advance_generation += 1

    def _cancel_date_check(self) -> None:
        if self._date_timer is not None:
            self._date_timer.cancel()
            self._date_timer = None
        self._date_generation += 1

    def _on_advance_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._advance_generation or self._state != self.ACTIVE:
                return
            self._advance_timer = None
            self.advance()

    def _on_date_check_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._date_generation or self._state != self.ACTIVE:
                return
            self._date_timer = None
            if not self.is_active():
                logging.info(
                    "Stopping playlist %s due to date constraints",
                    self.playlist.playlist_name,
                )
                self.stop()
                return
            self._arm_date_check()


def select_active_playlist(
    cycles: List[PlaylistCycle],
    now_ts: Optional[float] = None,
) -> PlaylistCycle:
    now = time.time() if now_ts is None else now_ts
    default = next((cycle for cycle in cycles if cycle.is_default), None)
    if default is not None and is_playlist_active(default.start_date, default.end_date, now):
        return default
    for cycle in cycles:
        if is_playlist_active(cycle.start_date, cycle.end_date, now):
            return cycle
    upcoming = next_scheduled_playlist(cycles, now)
    if upcoming is not None:
        message = playlist_timing_message(upcoming.playlist_name, upcoming.start_date, upcoming.end_date, now)
        raise NoActivePlaylistError(f"No active playlists. {message}", next_playlist=upcoming)
    raise NoActivePlaylistError("No active playlists available and no future playlists scheduled")


def clear_assets_directory(assets_dir: str, on_progress: Optional[InitProgressCallback] = None) -> int:
    if not os.path.isdir(assets_dir):
        os.makedirs(assets_dir, exist_ok=True)
        logging.info("Created assets directory: %s", assets_dir)
        return 0
    entries = os.listdir(assets_dir)
    if not entries:
        logging.info("Assets directory is already empty")
        return 0
    removed = 0
    total = len(entries)
    for completed, name in enumerate(entries, start=1):
        path = os.path.join(assets_dir, name)
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
            removed += 1
        except OSError as exc:
            logging.warning("Error removing %s: %s", path, exc)
        if on_progress is not None:
            on_progress(
                InitProgress(
                    stage="clearing",
                    message=f"Clearing assets ({completed}/{total})...",
                    progress=completed / total * 100,
                    current=completed,
                    total=total,
                )
            )
    logging.info("Cleared %d items from assets directory", removed)
    return removed


def get_device_name() -> Optional[str]:
    try:
        name = socket.gethostname()
    except OSError as exc:
        logging.warning("Error getting device name: %s", exc)
        return None
    return name or None


class DigitalSignageInitializer:
    STAGE_ERRORS = {
        "clearing": "Clearing assets failed",
        "api-fetch": "API fetch failed",
        "downloading": "Asset download failed",
    }

    def __init__(
        self,
        cfg: Dict,
        sleep: Callable[[float], None] = time.sleep,
        device_name_probe: Callable[[], Optional[str]] = get_device_name,
    ) -> None:
        self.cfg = resolve_config(cfg)
        self._sleep = sleep
        self._device_name_probe = device_name_probe

    def initialize(self, on_progress: Optional[InitProgressCallback] = None) -> InitializationResult:
        def _notify(stage: str, message: str, progress: Optional[float] = None, **counters: int) -> None:
            if on_progress is not None:
                on_progress(InitProgress(stage=stage, message=message, progress=progress, **counters))

        started = time.monotonic()
        stage = "clearing"
        logging.info("Starting Digital Signage initialization...")
        try:
            if self.cfg["clear_assets_on_start"]:
                _notify("clearing", "Clearing assets directory...", 0)
                clear_assets_directory(self.cfg["assets_dir"], on_progress)

            stage = "device-info"
            device_name = self._device_information(_notify)

            stage = "api-fetch"
            _notify("api-fetch", "Fetching API data...", 0)
            manifest = fetch_manifest(self.cfg["api_url"], self.cfg["request_timeout_sec"])
            _notify("api-fetch", f"API data received: {len(manifest.playlists)} playlists", 100)
            logging.info("API data fetched successfully: %d playlists", len(manifest.playlists))

            stage = "downloading"
            results, cycles = self._download_and_process(manifest, _notify)
        except (SignageError, OSError) as exc:
            prefix = self.STAGE_ERRORS.get(stage)
            message = f"{prefix}: {exc}" if prefix else str(exc)
            logging.error("Initialization failed: %s", message)
            _notify("complete", f"Initialization failed: {message}", 0)
            return InitializationResult(success=False, error=message)

        result = self._final_result(device_name, manifest, results, cycles, started)
        _notify("complete", "Initialization completed successfully!", 100)
        logging.info("Digital Signage initialization completed successfully!")
        return result

    def _device_information(self, notify: Callable[..., None]) -> Optional[str]:
        notify("device-info", "Getting device information...", 0)
        try:
            device_name = self._device_name_probe()
        except Exception as exc:
            logging.warning("Error getting device name: %s", exc)
            device_name = None
        notify("device-info", f"Device: {device_name or 'Unknown'}", 100)
        logging.info("Device name: %s", device_name or "Unknown")
        return device_name

    def _download_and_process(
        self,
        manifest: Manifest,
        notify: Callable[..., None],
    ) -> Tuple[List[FetchResult], List[PlaylistCycle]]:
        notify("downloading", "Starting asset download...", 0)

        asset_progress: Optional[ProgressCallback] = None
        if self.cfg["enable_progress_tracking"]:
            def asset_progress(progress: DownloadProgress) -> None:
                done = progress.current if progress.status != "downloading" else progress.current - 1
                percent = done / progress.total * 100 if progress.total else 0
                notify(
                    "downloading",
                    f"Downloading: {progress.asset.name}",
                    percent,
                    current=progress.current,
                    total=progress.total,
                )

        results = fetch_assets(self.cfg, manifest, asset_progress, self._sleep)
        cycles = prepare_playlists_for_cycling(manifest, results)
        if self.cfg["write_manifest_summary"]:
            write_webview_manifest(self.cfg, manifest, results, cycles)
        notify("downloading", "Asset processing completed", 100)
        logging.info("Asset processing completed: %d assets processed", len(results))
        return results, cycles

    def _final_result(
        self,
        device_name: Optional[str],
        manifest: Manifest,
        results: List[FetchResult],
        cycles: List[PlaylistCycle],
        started: float,
    ) -> InitializationResult:
        stats = InitializationStats(
            total_assets=len(results),
            successful_downloads=sum(1 for r in results if r.success),
            failed_downloads=sum(1 for r in results if not r.success),
            streams_kept=sum(1 for r in results if r.success and is_stream_asset(r.asset)),
            total_playlists=len(cycles),
            initialization_time_ms=int((time.monotonic() - started) * 1000),
        )
        logging.info("Initialization statistics: %s", asdict(stats))
        return InitializationResult(
            success=True,
            device_name=device_name,
            manifest=manifest,
            fetch_results=results,
            playlist_cycles=cycles,
            default_playlist=self.get_default_playlist(cycles),
            stats=stats,
        )

    @staticmethod
    def get_default_playlist(cycles: List[PlaylistCycle]) -> Optional[PlaylistCycle]:
        # First default wins; multiple defaults are accepted.
        for cycle in cycles:
            if cycle.is_default:
                return cycle
        return cycles[0] if cycles else None

    def check_result(self, result: InitializationResult) -> None:
        if not result.playlist_cycles:
            raise EmptyCycleError("No playlists available for display")
        default = self.get_default_playlist(result.playlist_cycles)
        if default is None or not default.assets:
            raise EmptyCycleError("No assets available in default playlist")

    def validate_result(self, result: InitializationResult) -> bool:
        if not result.success:
            logging.error("Initialization validation failed: %s", result.error)
            return False
        try:
            self.check_result(result)
        except EmptyCycleError as exc:
            logging.error("Initialization validation failed: %s", exc)
            return False
        logging.info("Initialization validation passed")
        return True


def initialize_digital_signage(
    cfg: Dict,
    on_progress: Optional[InitProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> InitializationResult:
    initializer = DigitalSignageInitializer(cfg, sleep=sleep)
    result = initializer.initialize(on_progress)
    if not result.success:
        return result
    try:
        initializer.check_result(result)
    except EmptyCycleError as exc:
        logging.error("Initialization validation failed: %s", exc)
        return InitializationResult(success=False, error=f"Initialization validation failed: {exc}")
    return result


class StatusPresenter:
    def __init__(self, cfg: Dict) -> None:
        self._status_file = cfg.get("status_file") or ""
        self.halted = threading.Event()

    def show(self, asset: WebviewAsset, duration_sec: int) -> None:
        logging.info("Now playing: %s (%ss)", asset.name, duration_sec)
        if not self._status_file:
            return
        payload = {
            "updated_at": iso_now(),
            "current_asset": asset.to_dict(),
            "duration_sec": duration_sec,
        }
        write_json_file(self._status_file, payload)

    def error(self, message: str) -> None:
        logging.error("Signage error: %s", message)
        self.halted.set()


def log_progress(progress: InitProgress) -> None:
    if progress.progress is None:
        logging.info("%s: %s", progress.stage, progress.message)
    else:
        logging.info("%s: %s (%d%%)", progress.stage, progress.message, int(progress.progress))


def run_playlists(
    cfg: Dict,
    cycles: List[PlaylistCycle],
    presenter: StatusPresenter,
    stop_event: threading.Event,
) -> int:
    interval = float(config_value(cfg, "date_check_interval_sec") or 60)
    while not stop_event.is_set():
        try:
            playlist = select_active_playlist(cycles)
        except NoActivePlaylistError as exc:
            if exc.next_playlist is None:
                presenter.error(str(exc))
                return 2
            logging.info("%s", exc)
            remaining = time_until_start(exc.next_playlist.start_date) or 0.0
            stop_event.wait(min(max(remaining, 1.0), interval))
            continue

        scheduler = CycleScheduler(
            playlist,
            presenter.show,
            presenter.error,
            date_check_interval_sec=interval,
        )
        logging.info("Starting digital signage display with playlist: %s", playlist.playlist_name)
        if not scheduler.start():
            stop_event.wait(1)
        while not stop_event.is_set() and scheduler.state == CycleScheduler.ACTIVE:
            stop_event.wait(1)
        scheduler.stop()
        if presenter.halted.is_set():
            logging.error("Presentation halted; waiting for shutdown.")
            stop_event.wait()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Signage playlist player")
    parser.add_argument("--config", default="config.json", help="Path to config.json")
    args = parser.parse_args()

    cfg = load_config(os.path.abspath(args.config))
    setup_logging(cfg)
    if not cfg.get("api_url"):
        logging.error("api_url is not configured.")
        return 2

    stop_event = threading.Event()

    def _handle(sig, _frame):
        logging.info("Signal %s received, stopping...", sig)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)

    result = initialize_digital_signage(cfg, on_progress=log_progress)
    if not result.success:
        logging.error("Initialization failed: %s", result.error)
        return 1

    return run_playlists(cfg, result.playlist_cycles, StatusPresenter(cfg), stop_event)


if __name__ == "__main__":
    raise SystemExit(main())

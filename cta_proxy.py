#!/usr/bin/env python3
# CTA Train Tracker proxy for the arrivals board.

from collections import deque
from concurrent.futures import ThreadPoolExecutor
import datetime
from dataclasses import dataclass, replace
import logging
import math
import os
import re
import threading
import time
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypedDict,
)
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from flask import Flask, jsonify, request, Response
import requests

load_dotenv()

log = logging.getLogger("cta_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


CTA_BASE = os.getenv("CTA_BASE_URL", "https://lapi.transitchicago.com/api/1.0")
CTA_API_KEY = os.getenv("CTA_API_KEY") or os.getenv("TRAIN_API_KEY")
CTA_TIMEZONE = ZoneInfo(os.getenv("CTA_TIMEZONE", "America/Chicago"))
CTA_MAX_RESULTS = env_int("CTA_MAX_RESULTS", 500)

CTA_CONNECT_TIMEOUT_SEC = env_float("CTA_CONNECT_TIMEOUT_SEC", 3.0)
CTA_READ_TIMEOUT_SEC = env_float("CTA_READ_TIMEOUT_SEC", 7.0)

RATE_LIMIT_WINDOW_SEC = env_int("RATE_LIMIT_WINDOW_SEC", 60)
CTA_OUTBOUND_RATE_LIMIT_PER_MIN = env_int("CTA_OUTBOUND_RATE_LIMIT_PER_MIN", 300)

ARRIVALS_CACHE_TTL_SEC = env_float("ARRIVALS_CACHE_TTL_SEC", 59.0)
BATCH_SIZE = max(1, env_int("BATCH_SIZE", 4))
MAX_FETCH_WORKERS = max(1, env_int("MAX_FETCH_WORKERS", 8))

HOLIDAY_TRAIN_CHECK = env_bool("HOLIDAY_TRAIN_CHECK", True)
HOLIDAY_TRAIN_RUN = env_int("HOLIDAY_TRAIN_RUN", 1225)

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = env_int("PORT", 3000)

ID_KINDS = ("stpid", "mapid")
# Field of an eta record that echoes the identifier it was requested by.
ID_RECORD_FIELDS = {"stpid": "stpId", "mapid": "staId"}
ID_PATTERN = re.compile(r"^[0-9A-Za-z]{1,16}$")

ROUTE_NAMES = {
    "G": "Green",
    "Brn": "Brown",
    "Org": "Orange",
    "P": "Purple",
    "Y": "Yellow",
}
HOLIDAY_RUN_NUMBERS = frozenset({1224, 1225})
PRIDE_FLAG_MARKER = "H"

MISSING_ID_MESSAGE = "Either stpid or mapid query parameter is required"
UPSTREAM_FAILED_MESSAGE = "Failed to fetch data from CTA API"

JsonDict = Dict[str, Any]


class RawArrival(TypedDict, total=False):
    staId: str
    stpId: str
    staNm: str
    stpDe: str
    rn: str
    rt: str
    destSt: str
    destNm: str
    trDr: str
    prdt: str
    arrT: str
    isApp: str
    isSch: str
    isDly: str
    isFlt: str
    flags: Optional[str]


class CtaBody(TypedDict, total=False):
    tmst: str
    errCd: str
    errNm: Optional[str]
    eta: List[RawArrival]


@dataclass(frozen=True)
class DisplayArrival:
    route: str
    route_full: str
    station_name: Optional[str]
    stop_description: Optional[str]
    arrival_time: int
    route_number: Optional[str]
    destination: str
    is_scheduled: bool
    is_arriving: bool
    is_delayed: bool
    is_holiday: bool
    is_pride: bool

    def to_json(self) -> JsonDict:
        return {
            "route": self.route,
            "routeNameFull": self.route_full,
            "stationName": self.station_name,
            "stopDescription": self.stop_description,
            "arrivalTime": self.arrival_time,
            "routeNumber": self.route_number,
            "destination": self.destination,
            "isScheduled": self.is_scheduled,
            "isArriving": self.is_arriving,
            "isDelayed": self.is_delayed,
            "isHoliday": self.is_holiday,
            "isPride": self.is_pride,
        }


@dataclass(frozen=True)
class CacheEntry:
    data: Tuple[DisplayArrival, ...]
    fetched_at_ms: int


@dataclass(frozen=True)
class ArrivalQuery:
    kind: str
    ids: Tuple[str, ...]
    min_minutes: Optional[float] = None


class InvalidQuery(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class OutboundRateLimited(Exception):
    def __init__(self, retry_after: Optional[int]):
        super().__init__("outbound rate limited")
        self.retry_after = retry_after


class UpstreamError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class UpstreamTimeout(UpstreamError):
    def __init__(self, message: str):
        super().__init__(504, message)


class MissingConfig(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class SlidingWindowLimiter:
    def __init__(self, limit: int, window_sec: int) -> None:
        self.limit = max(1, limit)
        self.window_sec = max(1, window_sec)
        self._events: Deque[float] = deque()
        self._lock = threading.Lock()

    def allow(self) -> Tuple[bool, int]:
        now = time.monotonic()
        with self._lock:
            while self._events and self._events[0] <= now - self.window_sec:
                self._events.popleft()
            if len(self._events) >= self.limit:
                retry_after = int(self.window_sec - (now - self._events[0]))
                return False, max(1, retry_after)
            self._events.append(now)
            return True, 0


class ArrivalCache:
    def __init__(self, ttl_sec: float, clock: Callable[[], float] = time.time) -> None:
        self.ttl_ms = int(ttl_sec * 1000)
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def lookup(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        if self.now_ms() - entry.fetched_at_ms >= self.ttl_ms:
            return None
        return entry

    def store(
        self,
        key: str,
        data: Iterable[DisplayArrival],
        fetched_at_ms: Optional[int] = None,
    ) -> CacheEntry:
        if fetched_at_ms is None:
            fetched_at_ms = self.now_ms()
        entry = CacheEntry(data=tuple(data), fetched_at_ms=fetched_at_ms)
        with self._lock:
            self._entries[key] = entry
        return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


cta_outbound_limiter = SlidingWindowLimiter(CTA_OUTBOUND_RATE_LIMIT_PER_MIN, RATE_LIMIT_WINDOW_SEC)
arrival_cache = ArrivalCache(ARRIVALS_CACHE_TTL_SEC)

app = Flask(__name__)
session = requests.Session()


def cache_key(kind: str, identifier: str) -> str:
    return f"{kind}:{identifier}"


def split_ids(values: Iterable[str]) -> List[str]:
    ids: List[str] = []
    seen = set()
    for value in values:
        for item in str(value).split(","):
            item = item.strip()
            if item and item not in seen:
                seen.add(item)
                ids.append(item)
    return ids


def _arg_values(args: Mapping[str, Any], name: str) -> List[str]:
    getlist = getattr(args, "getlist", None)
    if getlist is not None:
        return [str(v) for v in getlist(name)]
    value = args.get(name)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def parse_walk_time(value: Optional[str]) -> Optional[float]:
    if value is None or not str(value).strip():
        return None
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        minutes = float(text)
    except ValueError as exc:
        raise InvalidQuery("walkTime must be a number") from exc
    if not math.isfinite(minutes):
        raise InvalidQuery("walkTime must be a number")
    return minutes


def parse_query(args: Mapping[str, Any]) -> ArrivalQuery:
    for kind in ID_KINDS:
        ids = split_ids(_arg_values(args, kind))
        if ids:
            break
    else:
        raise InvalidQuery(MISSING_ID_MESSAGE)

    for identifier in ids:
        if not ID_PATTERN.match(identifier):
            raise InvalidQuery(f"Invalid {kind} value: {identifier[:32]}")

    return ArrivalQuery(
        kind=kind,
        ids=tuple(ids),
        min_minutes=parse_walk_time(args.get("walkTime")),
    )


def parse_cta_time(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=CTA_TIMEZONE)
    return parsed


def minutes_between(later: datetime.datetime, earlier: datetime.datetime) -> int:
    return math.floor((later - earlier).total_seconds() / 60)


def route_display_name(code: Optional[str]) -> str:
    if code is None:
        return ""
    return ROUTE_NAMES.get(code, code)


def run_number(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def cta_flag(value: Any) -> bool:
    return str(value).strip().lower() in {"1", "true"}


def is_holiday_run(rn: Any) -> bool:
    return run_number(rn) in HOLIDAY_RUN_NUMBERS


def is_pride_run(rn: Any, flags: Optional[str]) -> bool:
    if is_holiday_run(rn):
        return False
    return PRIDE_FLAG_MARKER in str(flags or "")


def arrival_offset(raw: RawArrival, now: datetime.datetime) -> Optional[int]:
    arrival = parse_cta_time(raw.get("arrT"))
    if arrival is None:
        return None
    reference = parse_cta_time(raw.get("prdt")) or now
    return minutes_between(arrival, reference)


def transform_arrival(
    raw: RawArrival,
    min_minutes: Optional[float] = None,
    *,
    now: Optional[datetime.datetime] = None,
    destination_prefix: str = "",
) -> Optional[DisplayArrival]:
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)

    offset = arrival_offset(raw, now)
    if offset is None:
        log.debug("Dropping eta without usable arrT: %s", raw.get("arrT"))
        return None
    if min_minutes is not None and offset < min_minutes:
        return None

    rn = raw.get("rn")
    holiday = is_holiday_run(rn)
    pride = False if holiday else is_pride_run(rn, raw.get("flags"))
    route = route_display_name(raw.get("rt"))

    return DisplayArrival(
        route=route,
        route_full=f"{route} Line",
        station_name=raw.get("staNm"),
        stop_description=raw.get("stpDe"),
        arrival_time=offset,
        route_number=rn,
        destination=f"{destination_prefix}{raw.get('destNm') or ''}",
        is_scheduled=cta_flag(raw.get("isSch")),
        is_arriving=cta_flag(raw.get("isApp")),
        is_delayed=cta_flag(raw.get("isDly")),
        is_holiday=holiday,
        is_pride=pride,
    )


def transform_all(
    records: Iterable[RawArrival], now: Optional[datetime.datetime] = None
) -> List[DisplayArrival]:
    out: List[DisplayArrival] = []
    for raw in records:
        arrival = transform_arrival(raw, now=now)
        if arrival is not None:
            out.append(arrival)
    return out


def passes_filter(arrival: DisplayArrival, min_minutes: Optional[float]) -> bool:
    return min_minutes is None or arrival.arrival_time >= min_minutes


def aggregate_arrivals(
    groups: Iterable[Sequence[DisplayArrival]],
    min_minutes: Optional[float] = None,
    holiday: Optional[DisplayArrival] = None,
) -> List[DisplayArrival]:
    merged = [a for group in groups for a in group if passes_filter(a, min_minutes)]
    merged.sort(key=lambda a: a.arrival_time)
    if holiday is not None:
        merged.insert(0, holiday)
    return merged


def request_json(
    url: str,
    *,
    params: Optional[Dict[str, str]] = None,
    timeout: Optional[Tuple[float, float]] = None,
    limiter: Optional[SlidingWindowLimiter] = None,
    service_name: str = "upstream",
) -> Any:
    if limiter is not None:
        allowed, retry_after = limiter.allow()
        if not allowed:
            raise OutboundRateLimited(retry_after)

    try:
        resp = session.get(
            url,
            params=params,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
    except requests.Timeout as exc:
        raise UpstreamTimeout(f"{service_name} request timed out") from exc
    except requests.RequestException as exc:
        raise UpstreamError(502, f"{service_name} request failed") from exc

    if resp.status_code >= 400:
        raise UpstreamError(resp.status_code, f"{service_name} upstream error {resp.status_code}")

    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamError(502, f"{service_name} invalid JSON") from exc


def cta_get_json(path: str, params: Optional[Dict[str, str]] = None) -> JsonDict:
    if not CTA_API_KEY:
        raise MissingConfig("CTA API key not configured")
    query: Dict[str, str] = {"key": CTA_API_KEY, "outputType": "JSON"}
    if params:
        query.update(params)
    data = request_json(
        f"{CTA_BASE}{path}",
        params=query,
        timeout=(CTA_CONNECT_TIMEOUT_SEC, CTA_READ_TIMEOUT_SEC),
        limiter=cta_outbound_limiter,
        service_name="CTA",
    )
    if not isinstance(data, dict) or not isinstance(data.get("ctatt"), dict):
        raise UpstreamError(502, "CTA malformed response")
    return data


def make_batches(ids: Sequence[str], size: int = BATCH_SIZE) -> List[List[str]]:
    size = max(1, size)
    return [list(ids[i : i + size]) for i in range(0, len(ids), size)]


def batch_query(kind: str, batch: Sequence[str]) -> str:
    return "&".join(f"{kind}={identifier}" for identifier in batch)


def fetch_batch(kind: str, batch: Sequence[str]) -> List[RawArrival]:
    data = cta_get_json(
        f"/ttarrivals.aspx?{batch_query(kind, batch)}",
        {"max": str(CTA_MAX_RESULTS)},
    )
    body: CtaBody = data["ctatt"]
    if body.get("errNm"):
        log.info("CTA reported %s for %s=%s", body.get("errNm"), kind, ",".join(batch))
    return eta_records(body)


def eta_records(body: CtaBody) -> List[RawArrival]:
    etas = body.get("eta") or []
    if not isinstance(etas, list) or not all(isinstance(raw, dict) for raw in etas):
        raise UpstreamError(502, "CTA malformed response")
    return list(etas)


def attribute_records(
    kind: str, batch: Sequence[str], records: Iterable[RawArrival]
) -> Dict[str, List[RawArrival]]:
    field = ID_RECORD_FIELDS[kind]
    grouped: Dict[str, List[RawArrival]] = {identifier: [] for identifier in batch}
    for raw in records:
        identifier = str(raw.get(field, ""))
        if identifier in grouped:
            grouped[identifier].append(raw)
        else:
            log.debug("Dropping eta for unrequested %s %r", kind, identifier)
    return grouped


def fetch_batches(
    kind: str, ids: Sequence[str]
) -> Tuple[Dict[str, List[RawArrival]], List[Exception]]:
    batches = make_batches(ids)
    grouped: Dict[str, List[RawArrival]] = {}
    failures: List[Exception] = []
    if not batches:
        return grouped, failures

    workers = min(len(batches), MAX_FETCH_WORKERS)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cta-batch") as pool:
        futures = [(batch, pool.submit(fetch_batch, kind, batch)) for batch in batches]
        for batch, future in futures:
            try:
                records = future.result()
            except (UpstreamError, OutboundRateLimited, MissingConfig) as exc:
                log.warning("CTA batch %s=%s failed: %s", kind, ",".join(batch), exc)
                failures.append(exc)
                continue
            grouped.update(attribute_records(kind, batch, records))

    log.debug("Fetched %d/%d batches for %s", len(batches) - len(failures), len(batches), kind)
    return grouped, failures


def holiday_item(
    data: JsonDict, now: Optional[datetime.datetime] = None
) -> Optional[DisplayArrival]:
    body: CtaBody = data.get("ctatt") or {}
    if body.get("errNm") is not None:
        return None
    etas = eta_records(body)
    if not etas:
        return None
    arrival = transform_arrival(etas[0], now=now, destination_prefix="To ")
    if arrival is None:
        return None
    label = f"Holiday Train on {arrival.route}"
    return replace(arrival, route=label, route_full=label, is_holiday=True, is_pride=False)


def holiday_train(cache: ArrivalCache) -> Optional[DisplayArrival]:
    key = f"runnumber:{HOLIDAY_TRAIN_RUN}"
    entry = cache.lookup(key)
    if entry is not None:
        return entry.data[0] if entry.data else None

    fetched_at = cache.now_ms()
    try:
        data = cta_get_json("/ttfollow.aspx", {"runnumber": str(HOLIDAY_TRAIN_RUN)})
        item = holiday_item(data)
    except (UpstreamError, OutboundRateLimited, MissingConfig) as exc:
        log.warning("Holiday train check failed: %s", exc)
        return None

    if item is not None:
        log.info("Holiday train run %s is active on %s", HOLIDAY_TRAIN_RUN, item.route)
    cache.store(key, (item,) if item is not None else (), fetched_at)
    return item


def get_arrivals(
    query: ArrivalQuery,
    cache: ArrivalCache,
    *,
    now: Optional[datetime.datetime] = None,
) -> List[DisplayArrival]:
    groups: List[Sequence[DisplayArrival]] = []
    misses: List[str] = []
    for identifier in query.ids:
        entry = cache.lookup(cache_key(query.kind, identifier))
        if entry is None:
            misses.append(identifier)
        else:
            groups.append(entry.data)

    log.debug("%s cache: %d hit, %d miss", query.kind, len(groups), len(misses))

    if misses:
        fetched_at = cache.now_ms()
        grouped, failures = fetch_batches(query.kind, misses)
        if failures and not grouped and not groups:
            raise failures[0]
        for identifier, records in grouped.items():
            entry = cache.store(
                cache_key(query.kind, identifier), transform_all(records, now), fetched_at
            )
            groups.append(entry.data)

    holiday = holiday_train(cache) if HOLIDAY_TRAIN_CHECK else None
    return aggregate_arrivals(groups, query.min_minutes, holiday)


def add_cache_headers(resp: Response, ttl_sec: float) -> Response:
    resp.headers["Cache-Control"] = f"max-age={int(ttl_sec)}"
    return resp


def error_response(
    status: int,
    message: str,
    *,
    details: Optional[str] = None,
    retry_after: Optional[int] = None,
) -> Response:
    payload: Dict[str, Any] = {"error": message}
    if details is not None:
        payload["details"] = details
    resp = jsonify(payload)
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    if retry_after is not None:
        resp.headers["Retry-After"] = str(retry_after)
    return resp


@app.route("/api/cta-arrivals", methods=["GET"])
def cta_arrivals() -> Response:
    try:
        query = parse_query(request.args)
    except InvalidQuery as exc:
        return error_response(400, str(exc))

    if not CTA_API_KEY:
        return error_response(500, "CTA API key not configured")

    try:
        arrivals = get_arrivals(query, arrival_cache)
    except MissingConfig as exc:
        return error_response(500, str(exc))
    except OutboundRateLimited as exc:
        return error_response(
            503,
            "Outbound CTA limit exceeded",
            details=str(exc),
            retry_after=exc.retry_after,
        )
    except UpstreamTimeout as exc:
        return error_response(504, "CTA API timed out", details=str(exc))
    except UpstreamError as exc:
        return error_response(500, UPSTREAM_FAILED_MESSAGE, details=str(exc))
    except Exception:
        log.exception("Error fetching arrivals")
        return error_response(500, "Unexpected error")

    resp = jsonify([arrival.to_json() for arrival in arrivals])
    return add_cache_headers(resp, ARRIVALS_CACHE_TTL_SEC)


if __name__ == "__main__":
    app.run(host=APP_HOST, port=APP_PORT)

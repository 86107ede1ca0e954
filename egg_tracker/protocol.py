"""Remote backend client seam and snapshot serialization.

The game backend speaks a base64 framed binary protocol. Encoding and
decoding of that wire format is delegated to a :class:`PayloadCodec`; this
module owns the HTTP transport, the failure taxonomy the schedulers rely on,
and the JSON form used to keep contract snapshots in the contract cache.
"""
from __future__ import annotations

import asyncio
import importlib
import json
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional, Protocol, Union

import aiohttp

from .models import (
    AccountSnapshot,
    BuffState,
    ContractSnapshot,
    Contributor,
    FarmInfo,
    Grade,
    ProductionParams,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BACKEND = "https://ctx-dot-auxbrainhome.appspot.com"


class QueryError(RuntimeError):
    """Base class for remote query failures."""

    kind = "other"

    @property
    def is_user_error(self) -> bool:
        return isinstance(self, RejectedError)

    @property
    def is_system_error(self) -> bool:
        return isinstance(self, TransportError)


class TransportError(QueryError):
    """Network or IO failure; transient."""

    kind = "system"


class RejectedError(QueryError):
    """The backend refused the account or credential."""

    kind = "user"


class DataError(QueryError):
    """The backend answered with a payload we could not decode."""

    kind = "data"


class PayloadCodec(Protocol):
    """Wire format of the game backend."""

    def encode_account_request(self, ei: str) -> str:
        ...

    def decode_account(self, payload: bytes) -> AccountSnapshot:
        ...

    def encode_coop_status_request(
        self, contract_id: str, room: str, ei: Optional[str]
    ) -> str:
        ...

    def decode_coop_status(self, payload: bytes) -> ContractSnapshot:
        ...


def load_codec(path: str) -> PayloadCodec:
    """Instantiate a codec named as ``package.module:ClassName``."""

    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Codec path must look like module:Class, got {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)()


class ProtocolClient(Protocol):
    """What the schedulers need from the backend."""

    async def fetch_account(self, ei: str) -> AccountSnapshot:
        ...

    async def fetch_contract_room(
        self, contract_id: str, room: str, ei: Optional[str] = None
    ) -> ContractSnapshot:
        ...


class HttpProtocolClient:
    """aiohttp transport for the game backend."""

    def __init__(
        self,
        codec: PayloadCodec,
        *,
        api_base: str = DEFAULT_API_BACKEND,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._codec = codec
        self._api_base = api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _post(self, path: str, data: str) -> bytes:
        session = await self._get_session()
        url = f"{self._api_base}{path}"
        try:
            async with session.post(url, data={"data": data}) as resp:
                resp.raise_for_status()
                return await resp.read()
        except aiohttp.ClientResponseError as exc:
            raise RejectedError(f"{path} answered {exc.status}: {exc.message}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{path} request failed: {exc!r}") from exc

    async def fetch_account(self, ei: str) -> AccountSnapshot:
        payload = await self._post("/ei/bot_first_contact", self._codec.encode_account_request(ei))
        try:
            return self._codec.decode_account(payload)
        except Exception as exc:
            raise DataError(f"Decode account {ei} failed: {exc!r}") from exc

    async def fetch_contract_room(
        self, contract_id: str, room: str, ei: Optional[str] = None
    ) -> ContractSnapshot:
        payload = await self._post(
            "/ei/coop_status",
            self._codec.encode_coop_status_request(contract_id, room, ei),
        )
        try:
            return self._codec.decode_coop_status(payload)
        except Exception as exc:
            raise DataError(f"Decode coop status {contract_id}/{room} failed: {exc!r}") from exc


# Contract cache body ------------------------------------------------------


def snapshot_to_dict(snapshot: ContractSnapshot) -> Dict[str, Any]:
    data = asdict(snapshot)
    data["grade"] = int(snapshot.grade)
    return data


def snapshot_from_dict(data: Dict[str, Any]) -> ContractSnapshot:
    contributors = []
    for item in data.get("contributors", []):
        production = item.get("production")
        farm = item.get("farm")
        contributors.append(
            Contributor(
                user_name=item.get("user_name", ""),
                contribution_amount=float(item.get("contribution_amount", 0.0)),
                finalized=bool(item.get("finalized", False)),
                soul_power=float(item.get("soul_power", 0.0)),
                production=ProductionParams(**production) if production else None,
                farm=FarmInfo(**farm) if farm else None,
                buff_history=[BuffState(**buff) for buff in item.get("buff_history", [])],
            )
        )
    return ContractSnapshot(
        contract_identifier=data["contract_identifier"],
        coop_identifier=data["coop_identifier"],
        total_amount=float(data.get("total_amount", 0.0)),
        seconds_remaining=float(data.get("seconds_remaining", 0.0)),
        grade=Grade.parse(data.get("grade", 0)),
        all_goals_achieved=bool(data.get("all_goals_achieved", False)),
        all_members_reporting=bool(data.get("all_members_reporting", False)),
        cleared_for_exit=bool(data.get("cleared_for_exit", False)),
        seconds_since_all_goals_achieved=float(data.get("seconds_since_all_goals_achieved", 0.0)),
        contributors=contributors,
    )


def encode_snapshot(snapshot: ContractSnapshot) -> bytes:
    return json.dumps(snapshot_to_dict(snapshot), separators=(",", ":")).encode("utf-8")


def decode_snapshot(body: Union[bytes, str]) -> ContractSnapshot:
    """Decode a cached contract snapshot, raising :class:`DataError` if malformed."""

    try:
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        return snapshot_from_dict(json.loads(body))
    except (ValueError, KeyError, TypeError) as exc:
        raise DataError(f"Malformed cached snapshot: {exc!r}") from exc


def is_snapshot_cleared(body: Union[bytes, str]) -> bool:
    try:
        return decode_snapshot(body).cleared_for_exit
    except DataError:
        logger.error("Decode cached snapshot failed, treating as not cleared")
        return False


__all__ = [
    "DEFAULT_API_BACKEND",
    "DataError",
    "HttpProtocolClient",
    "PayloadCodec",
    "ProtocolClient",
    "QueryError",
    "RejectedError",
    "TransportError",
    "decode_snapshot",
    "encode_snapshot",
    "is_snapshot_cleared",
    "load_codec",
    "snapshot_from_dict",
    "snapshot_to_dict",
]

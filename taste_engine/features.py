"""Audio-feature provider client with per-kind TTL caches.

The provider itself is an external, rate-limited service.  This module wraps
whatever stub talks to it (a gRPC client in production, a ``MagicMock`` in
tests) and guarantees that provider failures never propagate: a failed
lookup simply yields ``None``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterable

import grpc
from cachetools import TTLCache
from google.protobuf.struct_pb2 import Struct

from taste_engine.exceptions import MalformedStateError, UpstreamUnavailableError
from taste_engine.models import FeatureVector
from taste_engine.wire import dict_to_struct, struct_to_dict

logger = logging.getLogger(__name__)

DAY = 86400.0

# Default time-to-live per cached kind, in seconds.
TRACK_FEATURES_TTL = 30 * DAY
ALBUM_TTL = DAY
SEARCH_TTL = 3600.0
ARTIST_TTL = 7 * DAY


class FeatureProviderClient:
    """Cached, failure-tolerant access to the audio-feature provider.

    Args:
        stub: Object exposing ``get_feature_vector(item_id)``,
            ``get_feature_vectors(item_ids)``, ``get_album(album_id)``,
            ``search(query)`` and ``get_artist(artist_id)``.  Each returns a
            plain dict (or ``None``) and may raise on failure.
        maxsize: Maximum entries per cache.
        track_ttl: Time-to-live of track features.
        album_ttl: Time-to-live of album/catalogue metadata.
        search_ttl: Time-to-live of search results.
        artist_ttl: Time-to-live of artist data.
        timer: Clock used by the caches; injectable for tests.
    """

    def __init__(
        self,
        stub: Any,
        maxsize: int = 10000,
        track_ttl: float = TRACK_FEATURES_TTL,
        album_ttl: float = ALBUM_TTL,
        search_ttl: float = SEARCH_TTL,
        artist_ttl: float = ARTIST_TTL,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stub = stub
        self._lock = threading.RLock()
        self._features: TTLCache = TTLCache(maxsize=maxsize, ttl=track_ttl, timer=timer)
        self._albums: TTLCache = TTLCache(maxsize=maxsize, ttl=album_ttl, timer=timer)
        self._searches: TTLCache = TTLCache(maxsize=maxsize, ttl=search_ttl, timer=timer)
        self._artists: TTLCache = TTLCache(maxsize=maxsize, ttl=artist_ttl, timer=timer)

    # ------------------------------------------------------------------
    # Track features
    # ------------------------------------------------------------------

    def get_feature_vector(self, item_id: str) -> FeatureVector | None:
        """Return the item's features, or ``None`` if the provider cannot supply them."""
        with self._lock:
            cached = self._features.get(item_id)
        if cached is not None:
            return cached

        try:
            raw = self._stub.get_feature_vector(item_id)
        except Exception:
            logger.warning(
                "Feature provider failed for item %s; continuing without features.",
                item_id,
                exc_info=True,
            )
            return None

        fv = self._parse(item_id, raw)
        if fv is not None:
            with self._lock:
                self._features[item_id] = fv
        return fv

    def get_feature_vectors(self, item_ids: Iterable[str]) -> dict[str, FeatureVector | None]:
        """Batch lookup; only cache misses are sent to the provider."""
        ids = list(dict.fromkeys(item_ids))
        result: dict[str, FeatureVector | None] = {}
        with self._lock:
            for item_id in ids:
                result[item_id] = self._features.get(item_id)
        missing = [i for i in ids if result[i] is None]
        if not missing:
            return result

        try:
            raw_batch = self._stub.get_feature_vectors(missing) or {}
        except Exception:
            logger.warning(
                "Feature provider batch lookup failed for %d item(s).",
                len(missing),
                exc_info=True,
            )
            return result

        for item_id in missing:
            fv = self._parse(item_id, raw_batch.get(item_id))
            result[item_id] = fv
            if fv is not None:
                with self._lock:
                    self._features[item_id] = fv
        return result

    # ------------------------------------------------------------------
    # Catalogue metadata
    # ------------------------------------------------------------------

    def get_album(self, album_id: str) -> dict[str, Any] | None:
        return self._cached_call(self._albums, album_id, "get_album")

    def search(self, query: str) -> dict[str, Any] | None:
        return self._cached_call(self._searches, query, "search")

    def get_artist(self, artist_id: str) -> dict[str, Any] | None:
        return self._cached_call(self._artists, artist_id, "get_artist")

    def clear(self) -> None:
        """Drop every cached entry."""
        with self._lock:
            for cache in (self._features, self._albums, self._searches, self._artists):
                cache.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _cached_call(self, cache: TTLCache, key: str, method: str) -> dict[str, Any] | None:
        with self._lock:
            cached = cache.get(key)
        if cached is not None:
            return cached
        try:
            value = getattr(self._stub, method)(key)
        except Exception:
            logger.warning("Feature provider %s(%r) failed.", method, key, exc_info=True)
            return None
        if value:
            with self._lock:
                cache[key] = value
        return value or None

    @staticmethod
    def _parse(item_id: str, raw: Any) -> FeatureVector | None:
        if raw is None:
            return None
        if isinstance(raw, FeatureVector):
            return raw
        try:
            return FeatureVector.from_dict(raw)
        except MalformedStateError:
            logger.warning("Feature provider returned malformed features for item %s.", item_id)
            return None


class GrpcFeatureProvider:
    """Provider stub speaking ``catalog.FeatureProvider`` over generic unary calls.

    Requests and responses are ``google.protobuf.Struct`` messages.  Transport
    errors are raised as :class:`UpstreamUnavailableError`.

    Args:
        channel: An open :class:`grpc.Channel` to the provider.
        timeout: Per-call deadline in seconds.
    """

    SERVICE = "catalog.FeatureProvider"

    def __init__(self, channel: grpc.Channel, timeout: float = 5.0) -> None:
        self._timeout = timeout
        self._calls = {
            name: channel.unary_unary(
                f"/{self.SERVICE}/{name}",
                request_serializer=Struct.SerializeToString,
                response_deserializer=Struct.FromString,
            )
            for name in (
                "GetFeatureVector",
                "GetFeatureVectors",
                "GetAlbum",
                "Search",
                "GetArtist",
            )
        }

    def _call(self, name: str, payload: dict[str, Any], subject: str) -> dict[str, Any]:
        try:
            response = self._calls[name](dict_to_struct(payload), timeout=self._timeout)
        except grpc.RpcError as exc:
            raise UpstreamUnavailableError(subject, f"{name}: {exc.code()}") from exc
        return struct_to_dict(response)

    def get_feature_vector(self, item_id: str) -> dict[str, Any] | None:
        return self._call("GetFeatureVector", {"item_id": item_id}, item_id).get("features")

    def get_feature_vectors(self, item_ids: list[str]) -> dict[str, Any]:
        response = self._call("GetFeatureVectors", {"item_ids": list(item_ids)}, "batch")
        return response.get("features") or {}

    def get_album(self, album_id: str) -> dict[str, Any] | None:
        return self._call("GetAlbum", {"album_id": album_id}, album_id).get("album")

    def search(self, query: str) -> dict[str, Any] | None:
        return self._call("Search", {"query": query}, query).get("results")

    def get_artist(self, artist_id: str) -> dict[str, Any] | None:
        return self._call("GetArtist", {"artist_id": artist_id}, artist_id).get("artist")

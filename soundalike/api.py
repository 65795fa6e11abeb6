"""
FastAPI application exposing the feature store and the playlist builder.

The API only reads the store; it never drives a player.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from soundalike import __version__
from soundalike.config import Config
from soundalike.distance import metric_from_config
from soundalike.exceptions import ConfigError, DimensionMismatch, NotFound
from soundalike.models import TrackRecord
from soundalike.playlist import PlaylistBuilder, Strategy
from soundalike.storage import FeatureStore


logger = logging.getLogger(__name__)


# Request/Response models
class TrackInfo(BaseModel):
    """Track information model."""
    reference: str
    path: str
    sub_index: Optional[int] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    album_artist: Optional[str] = None
    genre: Optional[str] = None
    track_number: Optional[int] = None
    disc_number: Optional[int] = None
    analyzed: bool = True
    error: Optional[str] = None


class PlaylistEntry(BaseModel):
    """One playlist entry."""
    track: TrackInfo
    distance: float


class PlaylistRequest(BaseModel):
    """Playlist request model."""
    seed: Optional[str] = None
    references: Optional[List[str]] = None
    length: int = Field(default=20, ge=1, le=1000)
    strategy: str = Strategy.RANKED.value
    order: str = Strategy.RANKED.value
    metric: Optional[str] = None
    deduplicate: Optional[bool] = None
    include_seed_album: bool = False
    multi_seed: bool = True


class PlaylistResponse(BaseModel):
    """Playlist response wrapper."""
    strategy: str
    metric: str
    seeds: List[str]
    tracks: List[PlaylistEntry]


def track_info(record: TrackRecord) -> TrackInfo:
    return TrackInfo(
        reference=record.reference,
        path=record.path,
        sub_index=record.sub_index,
        analyzed=record.is_analyzed,
        error=record.error,
        **record.metadata(),
    )


def _parse_strategy(value: str, field_name: str) -> Strategy:
    try:
        return Strategy(value)
    except ValueError:
        choices = ", ".join(s.value for s in Strategy)
        raise HTTPException(
            status_code=400,
            detail=f"Unknown {field_name} '{value}' (choose from {choices})",
        ) from None


def create_app(config: Optional[Config] = None, store: Optional[FeatureStore] = None) -> FastAPI:
    """Create the API application.

    Args:
        config: Configuration object.
        store: Feature store to serve. Opened from ``store.path`` if None.

    Returns:
        The FastAPI application.
    """
    config = config or Config()

    app = FastAPI(
        title="soundalike",
        description="Sounds-alike playlists from audio feature vectors",
        version=__version__,
    )
    app.state.config = config
    app.state.store = store or FeatureStore(config)

    def get_store(request: Request) -> FeatureStore:
        return request.app.state.store

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close the store on shutdown."""
        app.state.store.close()

    @app.get("/")
    def root():
        """Root endpoint."""
        return {
            "name": "soundalike",
            "version": __version__,
            "status": "running",
        }

    @app.get("/health")
    def health(request: Request):
        """Health check endpoint."""
        store = get_store(request)
        return {
            "status": "healthy",
            "tracks_analyzed": store.count(),
            "tracks_failed": store.error_count(),
        }

    @app.get("/tracks")
    def list_tracks(
        request: Request,
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
    ):
        """List stored tracks, analyzed or failed."""
        records = get_store(request).list_all()
        return {
            "total": len(records),
            "limit": limit,
            "offset": offset,
            "tracks": [track_info(r) for r in records[offset:offset + limit]],
        }

    @app.get("/tracks/{reference:path}", response_model=TrackInfo)
    def get_track(request: Request, reference: str):
        """Get track information."""
        try:
            return track_info(get_store(request).get_reference(reference))
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/playlist", response_model=PlaylistResponse)
    def playlist(request: Request, body: PlaylistRequest):
        """Build a playlist from the current store contents."""
        strategy = _parse_strategy(body.strategy, "strategy")
        order = _parse_strategy(body.order, "order")
        if strategy is Strategy.INTERACTIVE:
            raise HTTPException(status_code=400, detail="Interactive playlists need the command line")
        if strategy is Strategy.FROM_PLAYLIST and not body.references:
            raise HTTPException(status_code=400, detail="from-playlist needs 'references'")
        if strategy is not Strategy.FROM_PLAYLIST and not body.seed:
            raise HTTPException(status_code=400, detail=f"{strategy.value} needs a 'seed'")

        store = get_store(request)
        dedup = body.deduplicate
        if dedup is None:
            dedup = config.get("playlist.deduplicate", True)

        try:
            metric = metric_from_config(config, name=body.metric, dimension=store.dimension)
            builder = PlaylistBuilder.from_store(store, metric, dedup=dedup)
            result = builder.build(
                strategy,
                body.length,
                seed=body.seed,
                references=body.references,
                order=order,
                include_seed_album=body.include_seed_album,
                multi_seed=body.multi_seed,
            )
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (DimensionMismatch, ConfigError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))

        return PlaylistResponse(
            strategy=result.strategy.value,
            metric=result.metric.name,
            seeds=list(result.seeds),
            tracks=[
                PlaylistEntry(track=track_info(track), distance=dist)
                for track, dist in zip(result.tracks, result.distances)
            ],
        )

    @app.get("/stats")
    def stats(request: Request):
        """Get store statistics."""
        store = get_store(request)
        df = store.to_dataframe()

        result: Dict[str, Any] = {
            "total_tracks": len(df),
            "analyzed": store.count(),
            "failed": store.error_count(),
            "dimension": store.dimension,
        }
        if df.empty:
            return result

        # Genre, artist and album distribution
        for column, key in (("genre", "genres"), ("artist", "artists"), ("album", "albums")):
            values = df[column].dropna()
            if not values.empty:
                counts = values.value_counts().head(20)
                result[key] = {str(name): int(count) for name, count in counts.items()}

        return result

    return app


def serve(config: Config, host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the API with uvicorn."""
    import uvicorn

    host = host or config.get("api.host", "127.0.0.1")
    port = port or config.get("api.port", 8000)
    logger.info(f"Serving on http://{host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port)

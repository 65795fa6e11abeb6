"""
CLI module for soundalike commands.
"""

import functools
import logging
from typing import List, Optional, Sequence

import click

from soundalike.config import Config
from soundalike.distance import MetricKind, metric_from_config
from soundalike.exceptions import ConfigError, NotFound, SoundalikeError
from soundalike.features import FeatureExtractor
from soundalike.player import EnqueueMode, LocalPlayer
from soundalike.playlist import Playlist, PlaylistBuilder, Strategy, describe
from soundalike.session import Candidate, InteractiveSession
from soundalike.storage import FeatureStore
from soundalike.sync import LibrarySynchronizer


logger = logging.getLogger(__name__)


def setup_logging(level: str = "WARNING", fmt: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Setup logging configuration.

    Args:
        level: Logging level.
        fmt: Log record format.
        log_file: Also write logs to this file.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=fmt or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def handle_errors(func):
    """Report soundalike errors as click errors (non-zero exit)."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SoundalikeError as e:
            logger.debug(f"Command failed: {e!r} {e.details}")
            raise click.ClickException(str(e)) from e
    return wrapper


class PromptChoiceProvider:
    """Asks on the terminal which of the offered songs comes next."""

    def offer(self, candidates: Sequence[Candidate]) -> Optional[str]:
        click.echo()
        for i, candidate in enumerate(candidates, 1):
            click.echo(f"  {i}. {candidate.label}  ({candidate.distance:.4f})")
        click.echo("  0. Stop here")
        choice = click.prompt(
            "Next song",
            type=click.IntRange(0, len(candidates)),
            default=1,
        )
        if choice == 0:
            return None
        return candidates[choice - 1].reference


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Path to configuration file"
)
@click.option(
    "--log-level",
    "-l",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (defaults to logging.level)"
)
@click.pass_context
@handle_errors
def cli(ctx, config: str, log_level: str):
    """soundalike - Sounds-alike playlists for your music library."""
    cfg = Config(config) if config else Config()

    # Setup logging
    setup_logging(
        log_level or cfg.get("logging.level", "WARNING"),
        cfg.get("logging.format"),
        cfg.get("logging.file"),
    )

    # Store config in context
    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg


@cli.command("list-db")
@click.option(
    "--detailed/--no-detailed",
    default=False,
    help="Show the tags of every song"
)
@click.pass_context
@handle_errors
def list_db(ctx, detailed: bool):
    """Print the songs stored in the feature store."""
    config = ctx.obj["config"]

    with FeatureStore(config) as store:
        df = store.to_dataframe()

    if df.empty:
        click.echo("The feature store is empty. Run 'update' first.")
        return

    if detailed:
        columns = ["reference", "title", "artist", "album", "track_number", "disc_number", "error"]
        click.echo(df[columns].to_string(index=False))
        return

    for row in df.itertuples(index=False):
        if isinstance(row.error, str):
            click.echo(f"{row.reference} (error: {row.error})")
        else:
            click.echo(row.reference)


def _synchronizer(config: Config, store: FeatureStore) -> LibrarySynchronizer:
    return LibrarySynchronizer(store, LocalPlayer(config), FeatureExtractor(config), config)


def _report(outcome) -> None:
    click.echo(f"Done: {outcome.summary()}.")
    for reference, reason in outcome.errors:
        click.echo(f"  failed: {reference}: {reason}", err=True)


@cli.command()
@click.pass_context
@handle_errors
def update(ctx):
    """Analyze new and changed songs, forget the removed ones."""
    config = ctx.obj["config"]

    click.echo(f"Updating the feature store from: {config.music_root}")
    with FeatureStore(config) as store:
        outcome = _synchronizer(config, store).update()
    _report(outcome)


@cli.command()
@click.pass_context
@handle_errors
def rescan(ctx):
    """Clear the feature store and analyze the whole library again."""
    config = ctx.obj["config"]

    click.echo(f"Rescanning: {config.music_root}")
    with FeatureStore(config) as store:
        outcome = _synchronizer(config, store).rescan()
    _report(outcome)


def _current_song(player: LocalPlayer) -> str:
    current = player.current_track()
    if current is None:
        raise NotFound(
            "No song is currently playing. Add a song to start the playlist from, and try again."
        )
    return current


def _order(config: Config, key: str, seed_song: bool) -> Strategy:
    if seed_song:
        return Strategy.GREEDY_PATH
    value = config.get(key, Strategy.RANKED.value)
    if value not in (Strategy.RANKED.value, Strategy.GREEDY_PATH.value):
        raise ConfigError(
            f"{key} must be '{Strategy.RANKED.value}' or '{Strategy.GREEDY_PATH.value}', got '{value}'",
            details={"key": key},
        )
    return Strategy(value)


def _run_interactive(
    builder: PlaylistBuilder,
    player: LocalPlayer,
    config: Config,
    continue_queue: bool,
) -> Playlist:
    session = InteractiveSession(builder, choices=config.get("playlist.choices", 3))
    if continue_queue:
        session.continue_from(player.queue())
    else:
        session.start(_current_song(player))

    def on_choice(record):
        click.echo(f"Added {record.reference}")

    return session.run(PromptChoiceProvider(), on_choice=on_choice)


@cli.command()
@click.argument("length", type=click.IntRange(min=1), required=False)
@click.option(
    "--distance",
    "-d",
    type=click.Choice([k.value for k in MetricKind], case_sensitive=False),
    help="Distance metric (defaults to playlist.metric)"
)
@click.option(
    "--metric-matrix",
    "-m",
    type=click.Path(exists=True, dir_okay=False),
    help="D x D matrix file for the mahalanobis distance"
)
@click.option(
    "--seed-song/--no-seed-song",
    default=False,
    help="Chain each song to the previous one instead of to the current song"
)
@click.option(
    "--album/--no-album",
    default=False,
    help="Queue whole albums close to the current song's album"
)
@click.option(
    "--from-queue/--no-from-queue",
    default=False,
    help="Extend the queue with songs close to the whole queue"
)
@click.option(
    "--interactive/--no-interactive",
    default=False,
    help="Pick each next song among the closest ones"
)
@click.option(
    "--continue",
    "continue_queue",
    is_flag=True,
    default=False,
    help="With --interactive, start from the last song of the queue"
)
@click.option(
    "--deduplicate-songs/--no-deduplicate-songs",
    default=None,
    help="Skip songs with the same title and artist (defaults to playlist.deduplicate)"
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Print the playlist instead of queueing it"
)
@click.pass_context
@handle_errors
def playlist(
    ctx,
    length: Optional[int],
    distance: Optional[str],
    metric_matrix: Optional[str],
    seed_song: bool,
    album: bool,
    from_queue: bool,
    interactive: bool,
    continue_queue: bool,
    deduplicate_songs: Optional[bool],
    dry_run: bool,
):
    """Queue LENGTH songs that sound like the current one."""
    config = ctx.obj["config"]

    if sum((album, from_queue, interactive)) > 1:
        raise click.UsageError("--album, --from-queue and --interactive cannot be combined")
    if continue_queue and not interactive:
        raise click.UsageError("--continue only works with --interactive")

    if deduplicate_songs is None:
        deduplicate_songs = config.get("playlist.deduplicate", True)

    player = LocalPlayer(config)
    with FeatureStore(config) as store:
        metric = metric_from_config(config, name=distance, matrix_path=metric_matrix, dimension=store.dimension)
        builder = PlaylistBuilder.from_store(store, metric, dedup=deduplicate_songs)

    length = length or config.get("playlist.length", 20)
    order = _order(config, "playlist.strategy", seed_song)
    queue = player.queue()

    if interactive:
        result = _run_interactive(builder, player, config, continue_queue)
    elif from_queue:
        result = builder.from_playlist(queue, length, order=order)
    elif album:
        album_order = _order(config, "playlist.album_order", seed_song)
        result = builder.album(_current_song(player), length, order=album_order)
    else:
        result = builder.build(order, length, seed=_current_song(player))

    if dry_run:
        click.echo(describe(result))
        return

    references = result.references
    if from_queue or continue_queue:
        # Keep the queue and add the new songs at its end.
        references = queue[1:] + references
    player.enqueue(references, EnqueueMode.REPLACE)
    click.echo(f"Queued {len(result)} songs ({result.strategy.value}, {result.metric.name}).")


@cli.command()
@click.option(
    "--host",
    default=None,
    help="Host to bind to (defaults to api.host)"
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=None,
    help="Port to bind to (defaults to api.port)"
)
@click.pass_context
@handle_errors
def serve(ctx, host: Optional[str], port: Optional[int]):
    """Start the read-only API server."""
    from soundalike.api import serve as serve_api

    config = ctx.obj["config"]
    click.echo(f"Starting API server at http://{host or config.get('api.host')}:{port or config.get('api.port')}")
    serve_api(config, host=host, port=port)


@cli.command()
@click.pass_context
@handle_errors
def stats(ctx):
    """Show feature store statistics."""
    config = ctx.obj["config"]

    with FeatureStore(config) as store:
        df = store.to_dataframe()
        dimension = store.dimension
        analyzed = store.count()
        failed = store.error_count()

    click.echo("\nFeature Store Statistics")
    click.echo("========================\n")
    click.echo(f"Store: {config.store_path}")
    click.echo(f"Analyzed songs: {analyzed}")
    click.echo(f"Failed songs: {failed}")
    click.echo(f"Feature dimension: {dimension if dimension is not None else '-'}")

    if df.empty:
        click.echo()
        return

    # Genre distribution
    genres = df["genre"].dropna()
    if not genres.empty:
        click.echo("\nTop genres:")
        for genre, count in genres.value_counts().head(10).items():
            click.echo(f"  {genre}: {count}")

    # Artist distribution
    artists = df["artist"].dropna()
    if not artists.empty:
        click.echo("\nTop artists:")
        for artist, count in artists.value_counts().head(10).items():
            click.echo(f"  {artist}: {count}")

    # Album distribution
    albums = df["album"].dropna()
    if not albums.empty:
        click.echo(f"\nAlbums: {albums.nunique()}")

    click.echo()


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()

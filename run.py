"""Entry-point for the Exam Coach application."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import webbrowser
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from exam_coach.bootstrap import initialize_app
from exam_coach.config import AppConfig
from exam_coach.errors import ExamCoachError, user_message
from exam_coach.logging_utils import DEFAULT_LOG_FORMAT, configure_logging, get_log_file_path
from exam_coach.processing import (
    AudioOutput,
    PyAudioMicrophone,
    RecordingController,
    describe_sample_buffer,
    pcm_bytes_to_sample_buffer,
)
from exam_coach.services.generation import GenerationGateway
from exam_coach.services.session import StudySession
from exam_coach.web import create_app
from exam_coach.web.server import normalize_root_path


LOGGER = logging.getLogger("exam_coach.cli")


cli = typer.Typer(add_completion=False, help="Exam Coach commands")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    log_file = get_log_file_path(storage_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    configure_logging(handlers=[file_handler, stream_handler])


def build_session(app_config: AppConfig) -> StudySession:
    """Wire the gateway, microphone and speaker into one study session."""

    return StudySession(
        GenerationGateway(app_config.generation),
        recorder=RecordingController(PyAudioMicrophone(app_config.capture)),
        audio_output=AudioOutput(app_config.playback),
        media_root=app_config.media_root,
    )


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None, open_browser=True)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="EXAM_COACH_ROOT_PATH",
    ),
    open_browser: bool = typer.Option(True, "--open-browser/--no-browser", help="Open the UI in a browser"),
) -> None:
    """Run the FastAPI-powered web experience."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    session = build_session(app_config)
    normalized_root = normalize_root_path(root_path)
    app = create_app(session, config=app_config, root_path=normalized_root)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server

    if open_browser:
        browser_host = host
        if not browser_host or browser_host in {"0.0.0.0", "::"}:
            browser_host = "127.0.0.1"
        url_path = f"{normalized_root}/" if normalized_root else "/"
        url = f"http://{browser_host}:{port}{url_path}"

        def _open_browser_later() -> None:
            time.sleep(1.0)
            try:
                webbrowser.open(url, new=2, autoraise=True)
            except webbrowser.Error as error:
                LOGGER.debug("Could not open a browser: %s", error)

        threading.Thread(target=_open_browser_later, daemon=True).start()

    server.run()


@cli.command()
def study(
    topic: str = typer.Argument(..., help="Exam topic to generate study material for"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the JSON to this file"),
) -> None:
    """Generate study material for TOPIC and print it as JSON."""

    cleaned = topic.strip()
    if not cleaned:
        raise typer.BadParameter("Topic must not be empty", param_hint="TOPIC")

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)
    gateway = GenerationGateway(app_config.generation)

    try:
        material = asyncio.run(gateway.request_study_material(cleaned))
    except ExamCoachError as error:
        typer.echo(f"Generation failed: {user_message(error)} ({error.message})", err=True)
        raise typer.Exit(code=1) from error

    rendered = json.dumps(material.model_dump(by_alias=True, mode="json"), ensure_ascii=False, indent=2)
    if output is not None:
        output.write_text(rendered + "\n", encoding="utf-8")
        typer.echo(f"Study material written to: {output}")
    else:
        typer.echo(rendered)


@cli.command()
def speak(
    text: str = typer.Argument(..., help="Text to synthesize and play"),
) -> None:
    """Synthesize TEXT and play it on the host speaker."""

    cleaned = text.strip()
    if not cleaned:
        raise typer.BadParameter("Text must not be empty", param_hint="TEXT")

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)
    gateway = GenerationGateway(app_config.generation)
    output = AudioOutput(app_config.playback)

    try:
        pcm = asyncio.run(gateway.request_speech(cleaned))
    except ExamCoachError as error:
        typer.echo(f"Speech generation failed: {user_message(error)} ({error.message})", err=True)
        raise typer.Exit(code=1) from error

    buffer = pcm_bytes_to_sample_buffer(
        pcm,
        sample_rate=app_config.playback.sample_rate,
        channels=app_config.playback.channels,
    )
    typer.echo(f"Playing {describe_sample_buffer(buffer)}")
    try:
        output.play(buffer)
        while output.active_count():
            time.sleep(0.1)
    except OSError as error:
        typer.echo(f"Audio output unavailable: {error}", err=True)
        raise typer.Exit(code=1) from error
    finally:
        output.close()


if __name__ == "__main__":
    cli()

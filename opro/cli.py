import argparse
import asyncio
import os
import pathlib
import random
import sys
from typing import List, Optional

from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .benchmark import BenchmarkSource
from .clients import OpenAICompatibleClient
from .config import OPROConfig, OPROSettings, check_api_keys
from .constants import SEED_ENV
from .errors import OPROError
from .metrics import USAGE
from .orchestrator import OPROOrchestrator
from .store import DiskSessionStore
from .utils import preview, random_sampler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="opro", description="OPRO prompt optimisation")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    parser.add_argument(
        "--config", type=str, default="opro.yaml", help="YAML settings file (optional)"
    )
    parser.add_argument("--store-dir", type=str, help="Session store directory")
    parser.add_argument("--benchmark", type=str, help="TSV file of question<TAB>answer lines")
    parser.add_argument("--seed", type=int, help="Seed for example sampling")
    parser.add_argument("--no-progress", action="store_true", help="Hide progress bars")
    sub = parser.add_subparsers(dest="command", required=True)

    new = sub.add_parser("new", help="Create a session")
    new.add_argument("name")
    new.add_argument("--k", type=int, default=OPROConfig.model_fields["k"].default)
    new.add_argument("--top-x", type=int, default=OPROConfig.model_fields["top_x"].default)
    new.add_argument("--optimizer-model", default=OPROConfig.model_fields["optimizer_model"].default)
    new.add_argument(
        "--optimizer-temperature",
        type=float,
        default=OPROConfig.model_fields["optimizer_temperature"].default,
    )
    new.add_argument("--scorer-model", default=OPROConfig.model_fields["scorer_model"].default)
    new.add_argument(
        "--scorer-temperature",
        type=float,
        default=OPROConfig.model_fields["scorer_temperature"].default,
    )

    sub.add_parser("list", help="List sessions")

    show = sub.add_parser("show", help="Show the prompts of a session")
    show.add_argument("session_id")

    delete = sub.add_parser("delete", help="Delete a session")
    delete.add_argument("session_id")

    run = sub.add_parser("run", help="Run generate/score/advance for a number of steps")
    run.add_argument("session_id")
    run.add_argument("--steps", type=int, default=1)
    run.add_argument("--batch-size", type=int, help="Prompts scored concurrently")

    score = sub.add_parser("score", help="Score an ad-hoc instruction with a session's scorer")
    score.add_argument("session_id")
    score.add_argument("text")
    return parser


def _print_sessions(console: Console, orch: OPROOrchestrator) -> None:
    table = Table(title="Sessions")
    for col in ("id", "name", "step", "prompts", "best"):
        table.add_column(col)
    for s in orch.list_sessions():
        best = orch.best_prompts(s)
        table.add_row(
            s.id,
            s.name,
            str(s.current_step),
            str(len(s.all_prompts())),
            f"{best[0].score:.2f}" if best else "-",
        )
    console.print(table)


def _print_session(console: Console, orch: OPROOrchestrator, session_id: str) -> None:
    session = orch.get_session(session_id)
    table = Table(title=f"{session.name} - step {session.current_step}")
    for col in ("step", "state", "score", "prompt"):
        table.add_column(col)
    for step in session.steps:
        for p in step.prompts:
            score = "-" if p.score is None else f"{p.score:.2f}"
            table.add_row(str(step.step_number), p.state.value, score, preview(p.text, 80))
    console.print(table)


async def _dispatch(
    args: argparse.Namespace,
    orch: OPROOrchestrator,
    client: OpenAICompatibleClient,
    console: Console,
) -> None:
    try:
        if args.command == "run":
            session = await orch.run(args.session_id, args.steps, args.batch_size)
            _print_session(console, orch, session.id)
        elif args.command == "score":
            report = await orch.custom_score(args.session_id, args.text)
            console.print(report.summary())
    finally:
        await client.aclose()


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main entry point for the ``opro`` command.

    Parses command-line arguments, sets up logging, loads settings and the
    benchmark, and dispatches to the requested sub-command.
    """
    args = build_parser().parse_args(argv)
    load_dotenv()

    logger.remove()
    logger.add(RichHandler(), level=args.log_level.upper(), format="{message}")
    console = Console()

    try:
        settings = OPROSettings.from_yaml(
            pathlib.Path(args.config),
            store_dir=args.store_dir,
            benchmark_path=args.benchmark,
            show_progress=False if args.no_progress else None,
        )
    except (ValidationError, ValueError) as e:
        logger.error("Invalid settings: {}", e)
        sys.exit(1)

    seed = args.seed if args.seed is not None else os.getenv(SEED_ENV)
    try:
        rng = random.Random(int(seed)) if seed is not None else None
    except ValueError:
        logger.error("Invalid {} value: {!r}", SEED_ENV, seed)
        sys.exit(1)
    sampler = random_sampler(rng)

    needs_models = args.command in {"run", "score"}
    try:
        questions = BenchmarkSource(settings.benchmark_path).load_questions() if needs_models else ()
    except OSError as e:
        logger.error("Cannot read benchmark: {}", e)
        sys.exit(1)

    with DiskSessionStore(settings.store_dir) as store:
        client = OpenAICompatibleClient(settings)
        orch = OPROOrchestrator(store, client, questions, settings, sampler=sampler)
        try:
            if args.command == "new":
                cfg = OPROConfig(
                    k=args.k,
                    top_x=args.top_x,
                    optimizer_model=args.optimizer_model,
                    optimizer_temperature=args.optimizer_temperature,
                    scorer_model=args.scorer_model,
                    scorer_temperature=args.scorer_temperature,
                )
                if not check_api_keys(settings, cfg):
                    logger.warning("Session created, but runs will fail until keys are set")
                console.print(orch.create_session(args.name, cfg).id)
            elif args.command == "list":
                _print_sessions(console, orch)
            elif args.command == "show":
                _print_session(console, orch, args.session_id)
            elif args.command == "delete":
                orch.delete_session(args.session_id)
            else:
                if not check_api_keys(settings, orch.get_session(args.session_id).config):
                    sys.exit(1)
                asyncio.run(_dispatch(args, orch, client, console))
                snapshot = USAGE.read()
                logger.bind(requests=snapshot.total_requests).info(
                    "Estimated cost: ${:.4f}", USAGE.estimate_cost(settings.prices)
                )
        except (OPROError, ValidationError, ValueError, OSError) as e:
            logger.error("{}", e)
            sys.exit(1)


if __name__ == "__main__":
    main()

"""Trend Orchestrator — Entry Point.

Usage:
    # Image → evidence-backed TikTok strategy
    python main.py analyze path/to/image.jpg
    python main.py analyze path/to/image.jpg --image-url https://cdn.example.com/image.jpg

    # Refine a saved strategy with feedback
    python main.py refine outputs/strategy_image.json --feedback "Make idea 2 less corporate"
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

import config
from pipeline.capabilities import default_capabilities
from pipeline.image_input import load_image_file
from pipeline.llm import LLMError, get_usage_summary, reset_usage
from pipeline.trend_orchestrator import (
    OrchestrationError,
    orchestrate_trend_match,
    refine_trend_strategy,
)
from schemas.orchestration import OrchestrationStep
from schemas.trend_strategy import TrendStrategy

console = Console()


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def print_step(step: OrchestrationStep):
    tools = ", ".join(call.tool_name for call in step.tool_calls) or "—"
    console.print(f"  [cyan]Step {step.step_number}[/cyan]  tools: {tools}")
    for result in step.tool_results:
        if result.tool_name == "researchTrends":
            query = result.input.get("searchQuery", "")
            console.print(f"    [dim]researchTrends '{query}' → {len(result.output.trends)} trend(s)[/dim]")
        else:
            console.print(f"    [dim]analyzeImage → {result.output.analysis.aesthetic_style}[/dim]")
    if step.text:
        console.print(f"    {step.text[:300]}")


def print_strategy(strategy: TrendStrategy):
    console.print(Panel(strategy.strategic_brief, title="Strategic brief", border_style="bright_blue"))
    table = Table(title="Content ideas")
    table.add_column("#", style="cyan")
    table.add_column("Title", style="bold")
    table.add_column("Audio")
    table.add_column("Sources", style="green")
    for idx, idea in enumerate(strategy.content_ideas, start=1):
        table.add_row(
            str(idx),
            idea.title,
            idea.tiktok_script.audio_spec,
            "\n".join(link.url for link in idea.source_links) or "-",
        )
    console.print(table)


def print_usage():
    usage = get_usage_summary()
    console.print(
        f"  [dim]{usage['calls']} LLM call(s), "
        f"{usage['total_tokens']:,} tokens, ${usage['total_cost']:.4f}[/dim]"
    )


def save_strategy(strategy: TrendStrategy, out: str | None, stem: str) -> Path:
    path = Path(out) if out else config.OUTPUT_DIR / f"strategy_{stem}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(strategy.to_wire(), indent=2, ensure_ascii=False), "utf-8")
    return path


def run_analyze(args: argparse.Namespace) -> int:
    image_path = Path(args.image)
    if not image_path.exists():
        console.print(f"[red]Image not found: {image_path}[/red]")
        return 1

    image, media_type = load_image_file(image_path)
    console.print(
        Panel(
            f"[bold cyan]TREND ORCHESTRATION[/bold cyan]\n{image_path.name}",
            border_style="bright_blue",
        )
    )

    start = time.time()
    try:
        strategy = orchestrate_trend_match(
            default_capabilities(),
            image,
            media_type,
            image_url=args.image_url,
            on_step=print_step,
        )
    except (OrchestrationError, LLMError) as exc:
        console.print(f"[red]Orchestration failed:[/red] {exc}")
        return 1

    print_strategy(strategy)
    path = save_strategy(strategy, args.out, image_path.stem)
    console.print(f"  [green]Output saved:[/green] {path}  ({time.time() - start:.1f}s)")
    print_usage()
    return 0


def run_refine(args: argparse.Namespace) -> int:
    strategy_path = Path(args.strategy)
    if not strategy_path.exists():
        console.print(f"[red]Strategy file not found: {strategy_path}[/red]")
        return 1
    try:
        current = TrendStrategy.model_validate_json(strategy_path.read_text("utf-8"))
    except ValidationError as exc:
        console.print(f"[red]Not a valid strategy file:[/red] {exc}")
        return 1

    console.print(Panel("[bold cyan]STRATEGY REFINEMENT[/bold cyan]", border_style="bright_blue"))
    try:
        refined = refine_trend_strategy(
            default_capabilities(),
            args.feedback,
            current,
            image_url=args.image_url,
        )
    except (OrchestrationError, LLMError) as exc:
        console.print(f"[red]Refinement failed:[/red] {exc}")
        return 1

    print_strategy(refined)
    path = save_strategy(refined, args.out, f"{strategy_path.stem}_refined")
    console.print(f"  [green]Output saved:[/green] {path}")
    print_usage()
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Trend Orchestrator — image to TikTok trend strategy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # -- analyze command --
    an = subparsers.add_parser("analyze", help="Analyze an image and build a trend strategy")
    an.add_argument("image", help="Path to a local image file")
    an.add_argument("--image-url", help="Public URL of the same image (shown to the research agent)")
    an.add_argument("--out", "-o", help="Where to save the strategy JSON (default: outputs/)")

    # -- refine command --
    rf = subparsers.add_parser("refine", help="Refine a saved strategy with feedback")
    rf.add_argument("strategy", help="Path to a strategy JSON file")
    rf.add_argument("--feedback", "-f", required=True, help="What to change")
    rf.add_argument("--image-url", help="Public URL of the reference image")
    rf.add_argument("--out", "-o", help="Where to save the refined strategy JSON")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    setup_logging()
    reset_usage()

    if args.command == "analyze":
        sys.exit(run_analyze(args))
    elif args.command == "refine":
        sys.exit(run_refine(args))


if __name__ == "__main__":
    main()

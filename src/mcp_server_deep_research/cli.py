"""CLI interface for the deep-research MCP server."""

import asyncio

import typer

from .cache import CacheRegistry
from .config import settings
from .exceptions import LLMProviderError
from .progress import ProgressSnapshot, ProgressTracker, format_progress
from .providers import create_generator, get_embedder
from .research.feedback import combine_query, generate_feedback
from .research.prompts import get_system_prompt
from .search import get_search_provider
from .utils import write_report_file

app = typer.Typer(help="Recursive deep research powered by LLMs and web search")


@app.command()
def research(
    query: str = typer.Argument(..., help="What would you like to research?"),
    depth: int = typer.Option(None, "--depth", "-d", help="Research depth (1-5)"),
    breadth: int = typer.Option(None, "--breadth", "-b", help="Research breadth (1-10)"),
    save_to: str = typer.Option("output.md", "--save", "-s", help="File path to save the report"),
    no_questions: bool = typer.Option(False, "--no-questions", help="Skip the follow-up questions"),
) -> None:
    """Run deep research on a query and write a markdown report."""
    from .research.machine import ROOT_RESEARCH_GOAL, ResearchMachine
    from .research.models import ResearchTask
    from .research.report import synthesize_report

    caches = CacheRegistry(settings.cache)
    try:
        generator = create_generator(settings, cache=caches.provider, system_prompt=get_system_prompt())
    except LLMProviderError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    depth = settings.research.clamp_depth(depth)
    breadth = settings.research.clamp_breadth(breadth)

    tracker = ProgressTracker()

    def on_progress(snapshot: ProgressSnapshot) -> None:
        tracker.record(snapshot.completed_queries)
        typer.echo(format_progress(snapshot, tracker.estimate(snapshot.total_queries)) + "\n")

    async def _research():
        combined = query
        if not no_questions:
            feedback = await generate_feedback(generator, query, cache=caches.feedback, repair_attempts=settings.research.repair_attempts)
            if feedback.follow_up_questions:
                typer.echo("\nTo better understand your research needs, please answer these follow-up questions:")
                answers = [typer.prompt(f"\n{question}\nYour answer", default="", show_default=False) for question in feedback.follow_up_questions]
                combined = combine_query(query, feedback.follow_up_questions, answers)
            elif feedback.analysis:
                typer.echo(feedback.analysis)

        typer.echo("\nResearching your topic...")
        machine = ResearchMachine(
            generator,
            settings=settings,
            caches=caches,
            search=get_search_provider(settings.search),
            observer=on_progress,
            embedder=get_embedder(settings.embedding) if settings.splitter.semantic else None,
        )
        result = await machine.run(ResearchTask(query=combined, research_goal=ROOT_RESEARCH_GOAL, depth=depth, breadth=breadth))
        typer.echo("\nWriting final report...")
        report = await synthesize_report(
            generator,
            combined,
            result.learnings,
            result.visited_sources,
            caches.reports,
            repair_attempts=settings.research.repair_attempts,
        )
        return result, report

    result, report = asyncio.run(_research())

    typer.echo(f"\n\nLearnings:\n\n{chr(10).join(result.learnings)}")
    typer.echo(f"\n\nVisited URLs ({len(result.visited_sources)}):\n\n{chr(10).join(result.visited_sources)}")
    path = write_report_file(save_to, report.markdown)
    typer.echo(f"\n\nFinal Report:\n\n{report.markdown}")
    typer.echo(f"\nReport has been saved to {path}")


@app.command()
def feedback(query: str = typer.Argument(..., help="Query to refine")) -> None:
    """Print follow-up questions that would sharpen a research query."""
    try:
        generator = create_generator(settings, system_prompt=get_system_prompt())
    except LLMProviderError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    response = asyncio.run(generate_feedback(generator, query, repair_attempts=settings.research.repair_attempts))
    for i, question in enumerate(response.follow_up_questions, 1):
        typer.echo(f"{i}. {question}")
    if response.analysis:
        typer.echo(f"\n{response.analysis}")


@app.command()
def config() -> None:
    """Show current configuration."""
    print(f"Provider: {settings.llm.provider}")
    print(f"Model: {settings.llm.model_name}")
    print(f"Base URL: {settings.llm.base_url or '(default)'}")
    print(f"Search: {'enabled' if get_search_provider(settings.search) else 'disabled'}")
    print(f"Semantic splitting: {settings.splitter.semantic} (embeddings: {settings.embedding.provider})")
    print(f"Depth: {settings.research.default_depth} [{settings.research.min_depth}-{settings.research.max_depth}]")
    print(f"Breadth: {settings.research.default_breadth} [{settings.research.min_breadth}-{settings.research.max_breadth}]")
    print(f"Concurrency: {settings.research.concurrency_limit}")


@app.command()
def server() -> None:
    """Run the MCP server with the configured transport."""
    from .server import main

    main()


if __name__ == "__main__":
    app()

"""citeloop - evidence-backed research reports

Simple CLI for running one research goal through the pipeline.
"""

import argparse
import asyncio
import sys

from citeloop.agents.control_loop import ControlLoop
from citeloop.errors import PreconditionError
from citeloop.models.documents import Citation
from citeloop.research_core.citations import format_citations


async def run_research(goal: str, *, mode: str | None, domains: list[str], exclude_domains: list[str]) -> int:
    """Run research on the given goal."""
    print(f"Research goal: {goal}")
    print("-" * 50)

    loop = ControlLoop.build(mode=mode)
    constraints = {"domains": domains, "exclude_domains": exclude_domains}

    try:
        async for event in loop.run(goal, constraints):
            event_type = event.event.value
            data = event.data

            if event_type == "round_started":
                print(f"\n[~] Round {data.get('round')}:")
                for query in data.get("queries", []):
                    print(f"  - {query}")

            elif event_type == "round_completed":
                print(f"  [+] {data.get('sources_found')} sources")

            elif event_type == "tasks_planned":
                tasks = data.get("tasks", [])
                print(f"\n[*] {len(tasks)} task(s), route: {data.get('route')}")
                for task in tasks:
                    print(f"  {task.get('id')}: {task.get('aspect')} ({len(task.get('queries', []))} queries)")

            elif event_type == "synthesis_started":
                label = "Revising" if data.get("revision") else "Synthesizing"
                print(f"\n[+] {label} from {data.get('sources')} candidate sources...")

            elif event_type == "draft_created":
                print(f"  draft: {data.get('citations')} citations, confidence {data.get('confidence')}")

            elif event_type == "quality_checked":
                issues = data.get("issues", [])
                print(f"[?] Quality gate: {len(issues)} issue(s)")
                for issue in issues:
                    print(f"  [{issue.get('severity')}/{issue.get('type')}] {issue.get('description')}")

            elif event_type == "route_decided":
                print(f"[>] {data.get('route')}: {data.get('reason')}")

            elif event_type == "research_complete":
                counters = data.get("counters", {})
                print("\n\n[*] Research Complete!")
                print(f"   Passes: {counters.get('total_iterations')}")
                print(f"   Confidence: {data.get('confidence')}")
                print(f"\n{'='*50}")
                print("REPORT:")
                print(f"{'='*50}")
                print(data.get("report", ""))
                citations = [Citation(**c) for c in data.get("citations", [])]
                if citations:
                    print("\nSources:")
                    print(format_citations(citations))
                for warning in data.get("warnings", []):
                    print(f"[!] {warning}")

            elif event_type == "error":
                print(f"\n[!] Error: {data.get('message', 'Unknown error')}")
    except PreconditionError as exc:
        print(f"\n[!] Cannot run: {exc}", file=sys.stderr)
        return 2
    return 0


def main():
    parser = argparse.ArgumentParser(description="citeloop research pipeline")
    parser.add_argument("--goal", "-q", required=True, help="Research goal")
    parser.add_argument(
        "--mode",
        choices=["orchestrator", "iterative"],
        help="Research strategy (default: from config)",
    )
    parser.add_argument("--domain", action="append", default=[], help="Restrict search to a domain or topic")
    parser.add_argument("--exclude-domain", action="append", default=[], help="Exclude a domain or topic")

    args = parser.parse_args()

    sys.exit(
        asyncio.run(
            run_research(
                args.goal,
                mode=args.mode,
                domains=args.domain,
                exclude_domains=args.exclude_domain,
            )
        )
    )


if __name__ == "__main__":
    main()

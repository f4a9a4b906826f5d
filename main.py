"""DeepSearch - multi-stage web research

Simple CLI for running research queries.
"""

import argparse
import asyncio

from deepsearch.agents.orchestrator import build_orchestrator
from deepsearch.models.research import ResearchMode
from deepsearch.services.background import background_tasks


async def run_research(query: str, mode: str, provider: str | None = None, user_id: str | None = None):
    """Run research on the given query."""
    print(f"Research query: {query} (mode: {mode})")
    print("-" * 50)

    orchestrator = build_orchestrator(provider)
    related: list[str] = []

    try:
        async for event in orchestrator.research(query, mode=mode, user_id=user_id):
            event_type = event.event.value
            data = event.data

            if event_type == "plan_created":
                plan = data.get("plan", [])
                cached = " (cached)" if data.get("cached") else ""
                print(f"\n[*] Research Plan: {data.get('query_type')}, {len(plan)} aspects{cached}")
                for i, item in enumerate(plan, 1):
                    print(f"  {i}. {item.get('aspect')}: {item.get('query', '')[:80]}")
                if data.get("refined_query") and data["refined_query"] != data.get("original_query"):
                    print(f"  Refined query: {data['refined_query']}")

            elif event_type == "search_result":
                status = "failed" if data.get("failed") else f"{data.get('results_count')} results"
                print(f"  [+] Round {data.get('round')} '{data.get('aspect')}': {status}")

            elif event_type == "extraction_completed":
                print(f"  [=] Extracted '{data.get('aspect')}': {data.get('claims')} claims")

            elif event_type == "gaps_identified":
                gaps = data.get("gaps", [])
                print(f"\n[~] {len(gaps)} gaps identified")
                for gap in gaps:
                    print(f"  - {gap.get('importance')}: {gap.get('query')}")

            elif event_type == "synthesis_started":
                print(f"\n[+] Synthesizing report from {data.get('sources_count')} sources...")

            elif event_type == "synthesis_progress":
                print(".", end="", flush=True)

            elif event_type == "related_searches":
                related = data.get("queries", [])

            elif event_type == "research_complete":
                print(f"\n\n[*] Research Complete!")
                print(f"   Runtime: {data.get('runtime_ms')}ms")
                print(f"   Tokens: {data.get('tokens_used')}")
                print(f"   Searches: {data.get('search_count')}")
                print(f"   Sources: {len(data.get('sources', []))}")
                print(f"\n{'='*50}")
                print("REPORT:")
                print(f"{'='*50}")
                print(data.get("report", ""))
                for source in data.get("sources", []):
                    print(f"[{source.get('index')}] {source.get('title')} - {source.get('url')}")
                if related:
                    print("\nRelated searches:")
                    for suggestion in related:
                        print(f"  - {suggestion}")

            elif event_type == "error":
                prefix = "[!] Error" if data.get("fatal", True) else "  [!] Warning"
                print(f"\n{prefix}: {data.get('message', 'Unknown error')}")
    finally:
        await background_tasks.drain()
        await orchestrator.cache.close()


def main():
    parser = argparse.ArgumentParser(description="DeepSearch research tool")
    parser.add_argument("query", help="Research query")
    parser.add_argument(
        "--mode",
        "-m",
        default=ResearchMode.RESEARCH.value,
        choices=[m.value for m in ResearchMode],
        help="Research mode (default: research)",
    )
    parser.add_argument("--provider", "-p", help="LLM provider (default: from config)")
    parser.add_argument("--user-id", help="Bill credits to this user id")

    args = parser.parse_args()

    asyncio.run(run_research(args.query, args.mode, args.provider, args.user_id))


if __name__ == "__main__":
    main()

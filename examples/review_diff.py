#!/usr/bin/env python3
# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Review the working tree's diff with a council of reviewer CLIs.

This example checks which reviewer CLIs are installed, runs a two-level
review of ``git diff HEAD`` in the current repository and prints the findings.

Run with:
    python examples/review_diff.py [path/to/repo]
"""

import asyncio
import subprocess
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from review_council import (
    AnalysisStatus,
    ProcessSpawnError,
    ReviewContext,
    ReviewEngine,
    default_registry,
    setup_logging,
)


async def example_availability():
    """Check every built-in provider."""
    print("=" * 60)
    print("Example 1: Provider Availability")
    print("=" * 60)

    registry = default_registry()
    installed = []
    for provider_id in registry.ids():
        result = await registry.test_availability(provider_id)
        if result.available:
            installed.append(provider_id)
            print(f"  {provider_id}: available")
        else:
            print(f"  {provider_id}: unavailable ({result.install_instructions})")
    print()
    return installed


async def example_review(repo: Path, provider_id: str):
    """Two-level review with live progress."""
    print("=" * 60)
    print(f"Example 2: Review with {provider_id}")
    print("=" * 60)

    diff = subprocess.run(
        ["git", "diff", "HEAD"], cwd=repo, capture_output=True, text=True, check=True,
    ).stdout
    if not diff.strip():
        print("No changes to review.\n")
        return

    changed = subprocess.run(
        ["git", "diff", "HEAD", "--name-only"], cwd=repo, capture_output=True, text=True, check=True,
    ).stdout.split()

    engine = ReviewEngine()
    engine.progress.subscribe(
        lambda run: print("  " + ", ".join(f"L{n}={p.status.value}" for n, p in sorted(run.levels.items())))
    )

    handle = engine.launch(
        ReviewContext(
            review_id="local",
            diff=diff,
            changed_files=changed,
            title="Local changes",
            worktree_path=str(repo),
        ),
        {"levels": {"1": True, "2": True}, "default_members": [provider_id]},
    )
    run = await engine.wait(handle.analysis_id)

    print(f"\nStatus: {run.status.value}")
    print(f"Summary: {run.summary}")
    if run.status == AnalysisStatus.COMPLETED:
        for finding in run.suggestions:
            where = f"{finding.file}:{finding.line_start}" if finding.line_start else finding.file
            print(f"  [{finding.type}] {where} - {finding.title}")
    print()


async def main():
    """Run all examples."""
    print("\nReview Council - Review a Diff\n")
    setup_logging("WARNING")
    repo = Path(sys.argv[1] if len(sys.argv) > 1 else ".").resolve()

    try:
        installed = await example_availability()
        if not installed:
            print("No reviewer CLI is installed.")
            sys.exit(1)
        await example_review(repo, installed[0])
    except ProcessSpawnError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except subprocess.CalledProcessError as e:
        print(f"Error: git failed: {e.stderr}")
        sys.exit(1)

    print("Done.")


if __name__ == "__main__":
    asyncio.run(main())

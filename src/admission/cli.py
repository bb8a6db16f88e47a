"""
Admission Control CLI
Command-line tools for inspecting policies and exercising the rate limiter.
"""

import asyncio
import json
import logging
import sys
import time

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from admission.config import settings
from admission.limiter.backoff import ExponentialBackoff
from admission.limiter.identifier import RequestInfo
from admission.limiter.policy import BUILTIN_POLICIES, get_policy
from admission.limiter.registry import build_rate_limiter
from admission.limiter.sliding_window import SlidingWindowLimiter
from admission.store.factory import connect_store

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

console = Console()


def mock_request(identifier: str, path: str = "/api/test") -> RequestInfo:
    """Build a request that resolves to the given identifier."""
    return RequestInfo(
        method="POST",
        path=path,
        headers={"x-forwarded-for": identifier, "user-agent": "admission-cli/0.1"},
    )


async def _open_limiter() -> SlidingWindowLimiter:
    limiter = build_rate_limiter()
    await connect_store(limiter.store)
    return limiter


def _resolve_policy(name: str):
    try:
        return get_policy(name)
    except ValueError as e:
        console.print(f"❌ [red]{e}[/red]")
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Admission Control CLI - sliding window rate limiting tools."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def policies(as_json: bool):
    """List built-in rate limit policies."""
    if as_json:
        data = [p.to_dict() for p in BUILTIN_POLICIES.values()]
        console.print(json.dumps(data, indent=2))
        return

    table = Table(title="Rate Limit Policies")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Window", justify="right")
    table.add_column("Max", justify="right", style="green")
    table.add_column("Skip Success", justify="center")
    table.add_column("Skip Failure", justify="center")
    table.add_column("Description")

    for policy in BUILTIN_POLICIES.values():
        table.add_row(
            policy.name,
            f"{policy.window_ms / 1000:g}s",
            str(policy.max_requests),
            "✓" if policy.skip_on_success else "",
            "✓" if policy.skip_on_failure else "",
            policy.description,
        )

    console.print(table)


@cli.command()
@click.argument("identifier")
@click.option("--count", "-n", default=10, help="Number of requests to send")
@click.option("--policy", "-p", "policy_name", default="general", help="Policy name")
@click.option("--delay-ms", "-d", default=0, help="Delay between requests (ms)")
def simulate(identifier: str, count: int, policy_name: str, delay_ms: int):
    """Send COUNT sequential requests for IDENTIFIER and show each decision."""
    policy = _resolve_policy(policy_name)

    async def run() -> list:
        limiter = await _open_limiter()
        results = []
        try:
            request = mock_request(identifier)
            for i in range(count):
                results.append(await limiter.check_rate_limit(request, policy))
                if delay_ms > 0 and i < count - 1:
                    await asyncio.sleep(delay_ms / 1000)
        finally:
            await limiter.destroy()
        return results

    results = asyncio.run(run())

    table = Table(title=f"Simulation: {identifier} under {policy.name}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Admitted", justify="center")
    table.add_column("Remaining", justify="right")
    table.add_column("Retry After (ms)", justify="right")

    for i, result in enumerate(results, 1):
        table.add_row(
            str(i),
            "[green]yes[/green]" if result.admitted else "[red]no[/red]",
            str(result.remaining),
            str(result.retry_after_ms) if result.retry_after_ms else "-",
        )

    console.print(table)
    admitted = sum(1 for r in results if r.admitted)
    console.print(f"Admitted: [green]{admitted}[/green]  Rejected: [red]{len(results) - admitted}[/red]")


@cli.command()
@click.option("--requests", "-n", "request_count", default=1000, help="Total requests")
@click.option("--concurrency", "-c", default=10, help="Requests per batch")
@click.option("--policy", "-p", "policy_name", default="general", help="Policy name")
def benchmark(request_count: int, concurrency: int, policy_name: str):
    """Measure limiter throughput across many distinct identifiers."""
    policy = _resolve_policy(policy_name)

    async def run() -> tuple[float, int]:
        limiter = await _open_limiter()
        admitted = 0
        start = time.perf_counter()
        try:
            for batch_start in range(0, request_count, concurrency):
                batch = range(batch_start, min(batch_start + concurrency, request_count))
                results = await asyncio.gather(*(
                    limiter.check_rate_limit(
                        mock_request(f"10.{i // 65536 % 256}.{i // 256 % 256}.{i % 256}"),
                        policy,
                    )
                    for i in batch
                ))
                admitted += sum(1 for r in results if r.admitted)
        finally:
            await limiter.destroy()
        return time.perf_counter() - start, admitted

    elapsed, admitted = asyncio.run(run())
    rps = request_count / elapsed if elapsed > 0 else float("inf")

    console.print(Panel(
        f"Requests: {request_count}\n"
        f"Concurrency: {concurrency}\n"
        f"Total time: {elapsed * 1000:.1f} ms\n"
        f"Average: {elapsed * 1000 / max(request_count, 1):.3f} ms/request\n"
        f"Throughput: {rps:,.0f} requests/s\n"
        f"Admitted: {admitted / max(request_count, 1):.1%}",
        title="Benchmark",
    ))


@cli.command()
@click.argument("identifier")
@click.option("--violations", "-n", default=5, help="Violations to record")
@click.option("--policy", "-p", "policy_name", default="auth", help="Policy whose window is the base")
def backoff(identifier: str, violations: int, policy_name: str):
    """Show the escalating backoff for repeated violations by IDENTIFIER."""
    policy = _resolve_policy(policy_name)
    tracker = ExponentialBackoff(max_backoff_ms=settings.backoff_max_ms)

    table = Table(title=f"Backoff for {identifier} (base {policy.window_ms / 1000:g}s)")
    table.add_column("Violation", justify="right", style="dim")
    table.add_column("Backoff (s)", justify="right", style="yellow")
    table.add_column("Multiplier", justify="right")

    for i in range(1, violations + 1):
        backoff_ms = tracker.calculate_backoff(identifier, policy.window_ms)
        table.add_row(
            str(i),
            f"{backoff_ms / 1000:g}",
            f"{backoff_ms / policy.window_ms:g}x",
        )

    console.print(table)

    tracker.reset_violations(identifier)
    after_reset = tracker.calculate_backoff(identifier, policy.window_ms)
    if after_reset == policy.window_ms:
        console.print("✅ [green]Reset restores the base window[/green]")
    else:
        console.print(f"⚠️ [yellow]Unexpected backoff after reset: {after_reset} ms[/yellow]")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()

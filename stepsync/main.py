import asyncio
import functools
import json
import sys
import click
import aiohttp
from typing import Any, Dict, List, Optional, Tuple

from stepsync.config import (
    AZURE_ORGANIZATION_URL as DEFAULT_ORGANIZATION_URL,
    AZURE_PROJECT as DEFAULT_PROJECT,
    BATCH_SIZE,
    MAX_RETRIES,
    MAX_WORKERS,
    PULL_TIMEOUT,
    REQUEST_TIMEOUT,
)
from stepsync.utils.logger import setup_logger
from stepsync.core.reader import WorkItemReader
from stepsync.core.transformer import TestCaseTransformer
from stepsync.core.client import AzureDevOpsClient
from stepsync.core.models import TestCase
from stepsync.core.projector import ResultProjector


def log_summary(logger, title: str, succeeded: int, failed: int) -> None:
    total_processed = succeeded + failed
    success_rate = (succeeded / total_processed * 100) if total_processed > 0 else 0

    logger.info("="*50)
    logger.info(title)
    logger.info("="*50)
    logger.info(f"Total processed: {total_processed}")
    logger.info(f"Succeeded: {succeeded}")
    if failed > 0:
        logger.info(f"Failed: {failed}")
    logger.info(f"Success rate: {success_rate:.1f}%")
    logger.info("="*50)


def write_output(data: Dict[str, Any], output: Optional[str]) -> None:
    text = json.dumps(data, indent=2)
    if output:
        with open(output, 'w', encoding='utf-8') as f:
            f.write(text)
    else:
        click.echo(text)


async def pull_test_cases(
    work_items: List[Dict[str, Any]],
    resolver,
    max_workers: int,
    batch_size: int,
    timeout: float,
    logger
) -> Tuple[List[TestCase], int]:
    """
    Expands every test case; a case that fails or times out is discarded as a whole.
    Returns the pulled cases (in input order) and the number of discarded ones.
    """
    test_cases: List[TestCase] = []
    failed_count = 0

    async def pull_one(work_item: Dict[str, Any]) -> TestCase:
        # One transformer per case: expansion bookkeeping is per instance
        transformer = TestCaseTransformer()
        return await asyncio.wait_for(
            transformer.transform_async(work_item, resolver, max_workers=max_workers),
            timeout=timeout
        )

    # Process in batches to control concurrency
    for start in range(0, len(work_items), batch_size):
        batch = work_items[start:start + batch_size]
        results = await asyncio.gather(*(pull_one(item) for item in batch), return_exceptions=True)

        for work_item, result in zip(batch, results):
            key = work_item.get("id", "?")
            if isinstance(result, TestCase):
                logger.info(f"Pulled test case {key}: {result.total_steps} step(s)")
                test_cases.append(result)
            elif isinstance(result, (asyncio.TimeoutError, asyncio.CancelledError)):
                logger.error(f"Pull of test case {key} timed out or was cancelled, discarded")
                failed_count += 1
            else:
                logger.error(f"Error processing test case {key}: {result}")
                failed_count += 1

    return test_cases, failed_count


async def process_pull(
    ids: List[int],
    source: Optional[str],
    organization_url: str,
    project: str,
    api_token: Optional[str],
    max_workers: int,
    batch_size: int,
    timeout: float,
    insecure: bool,
    logger
) -> Tuple[List[TestCase], int]:
    """
    Orchestrates the definition pull, from an export file or from Azure DevOps.
    """
    if source:
        reader = WorkItemReader(source)
        reader.validate()
        work_items = list(reader.read(ids or None))
        logger.info(f"Found {len(work_items)} test cases in {source}")

        async def resolve_from_export(group_id: int):
            return reader.fetch_group_markup(group_id)

        return await pull_test_cases(work_items, resolve_from_export, max_workers, batch_size, timeout, logger)

    client = AzureDevOpsClient(
        organization_url, project, api_token,
        timeout=REQUEST_TIMEOUT, max_retries=MAX_RETRIES, insecure=insecure
    )
    async with aiohttp.ClientSession() as session:
        work_items = await client.get_work_items(session, ids)
        logger.info(f"Fetched {len(work_items)} test cases from project {project}")
        resolver = functools.partial(client.fetch_group_markup, session)
        return await pull_test_cases(work_items, resolver, max_workers, batch_size, timeout, logger)


async def process_push(
    results: List[Dict[str, Any]],
    run_id: Optional[int],
    default_result_id: Optional[int],
    iteration_id: int,
    client: Optional[AzureDevOpsClient],
    dry_run: bool,
    logger
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Projects executed steps into iteration payloads and optionally sends them.
    """
    projector = ResultProjector()
    payloads = []
    failed_count = 0

    for i, data in enumerate(results):
        try:
            test_case = TestCase.from_dict(data)
            rows = projector.project(test_case.steps)
            iteration = projector.build_iteration_details(rows, iteration_id, test_case)
        except Exception as e:
            key = data.get("key", i) if isinstance(data, dict) else i
            logger.error(f"Error processing test case {key}: {e!r}")
            failed_count += 1
            continue

        result_id = data.get("resultId", default_result_id)
        payloads.append({"key": test_case.key, "resultId": result_id, "iteration": iteration})
        logger.info(f"Test case {test_case.key}: {len(rows)} action result(s)")

    if dry_run or client is None or run_id is None:
        if dry_run:
            for payload in payloads:
                logger.info(f"[DRY RUN] Would update result {payload['resultId']} of run {run_id}")
        return payloads, failed_count

    async with aiohttp.ClientSession() as session:
        for payload in payloads:
            if payload["resultId"] is None:
                logger.error(f"No result id for test case {payload['key']}, skipped")
                failed_count += 1
                continue
            if not await client.update_iteration_results(session, run_id, payload["resultId"], payload["iteration"]):
                failed_count += 1

    return payloads, failed_count


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Verbose logging')
@click.option('--insecure', '-k', is_flag=True, help='Disable SSL certificate verification')
@click.pass_context
def cli(ctx, verbose, insecure):
    """
    Synchronize Azure DevOps test steps (shared steps included) with flat, addressable steps.
    """
    logger = setup_logger(verbose=verbose)

    if insecure:
        import urllib3
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        logger.warning("SSL certificate verification disabled!")

    ctx.obj = {"logger": logger, "insecure": insecure}


@cli.command()
@click.option('--ids', '-i', default='', help='Comma separated test case ids')
@click.option('--source', '-s', type=click.Path(), help='Work item export (JSON) to read instead of Azure DevOps')
@click.option('--organization-url', '-o', default=DEFAULT_ORGANIZATION_URL, help='Azure DevOps organization URL')
@click.option('--project', '-p', default=DEFAULT_PROJECT, help='Azure DevOps project')
@click.option('--api-token', '-t', envvar='AZURE_DEVOPS_TOKEN', help='Azure DevOps personal access token')
@click.option('--max-workers', '-w', default=MAX_WORKERS, type=int, help='Concurrent shared steps fetches per test case')
@click.option('--batch-size', '-b', default=BATCH_SIZE, type=int, help='Test cases pulled concurrently')
@click.option('--timeout', default=PULL_TIMEOUT, type=float, help='Seconds allowed per test case')
@click.option('--output', '-f', type=click.Path(), help='Write pulled test cases to this file')
@click.pass_context
def pull(ctx, ids, source, organization_url, project, api_token, max_workers, batch_size, timeout, output):
    """
    Pull test cases and flatten their steps.
    """
    logger = ctx.obj["logger"]

    try:
        id_list = [int(i) for i in ids.replace(';', ',').split(',') if i.strip()]
    except ValueError:
        raise click.BadParameter(f"not a list of integers: {ids}", param_hint='--ids')

    if not source and not id_list:
        raise click.UsageError("Either --ids or --source is required.")

    if not source and not api_token:
        logger.critical("API token is required. Set AZURE_DEVOPS_TOKEN env var or use --api-token.")
        sys.exit(1)

    try:
        test_cases, failed_count = asyncio.run(process_pull(
            id_list, source, organization_url, project, api_token,
            max(1, max_workers), max(1, batch_size), timeout, ctx.obj["insecure"], logger
        ))
    except Exception as e:
        logger.critical(f"Fatal error during pull: {e}")
        sys.exit(1)

    write_output({"testCases": [test_case.to_dict() for test_case in test_cases]}, output)

    invalid = [test_case.key for test_case in test_cases if test_case.invalid]
    if invalid:
        logger.warning(f"Invalid test cases (missing shared steps): {', '.join(invalid)}")
    log_summary(logger, "Pull Summary", len(test_cases), failed_count)

    sys.exit(0 if failed_count == 0 else 1)


@cli.command()
@click.option('--results', '-r', required=True, type=click.Path(exists=True), help='Pulled test cases with step outcomes (JSON)')
@click.option('--run-id', type=int, help='Test run to update')
@click.option('--result-id', type=int, help='Test result to update (when not set per test case)')
@click.option('--iteration', default=1, type=int, help='Iteration id')
@click.option('--organization-url', '-o', default=DEFAULT_ORGANIZATION_URL, help='Azure DevOps organization URL')
@click.option('--project', '-p', default=DEFAULT_PROJECT, help='Azure DevOps project')
@click.option('--api-token', '-t', envvar='AZURE_DEVOPS_TOKEN', help='Azure DevOps personal access token')
@click.option('--dry-run', '-d', is_flag=True, help='Dry run mode')
@click.option('--output', '-f', type=click.Path(), help='Write iteration payloads to this file')
@click.pass_context
def push(ctx, results, run_id, result_id, iteration, organization_url, project, api_token, dry_run, output):
    """
    Project step outcomes into iteration results and push them.
    """
    logger = ctx.obj["logger"]

    with open(results, 'r', encoding='utf-8') as f:
        data = json.load(f)
    test_cases = data.get("testCases", []) if isinstance(data, dict) else data

    client = None
    if run_id is not None and not dry_run:
        if not api_token:
            logger.critical("API token is required (except for dry-run). Set AZURE_DEVOPS_TOKEN env var or use --api-token.")
            sys.exit(1)
        client = AzureDevOpsClient(
            organization_url, project, api_token,
            timeout=REQUEST_TIMEOUT, max_retries=MAX_RETRIES, insecure=ctx.obj["insecure"]
        )

    try:
        payloads, failed_count = asyncio.run(process_push(
            test_cases, run_id, result_id, iteration, client, dry_run, logger
        ))
    except Exception as e:
        logger.critical(f"Fatal error during push: {e}")
        sys.exit(1)

    if output or client is None:
        write_output({"results": payloads}, output)
    log_summary(logger, "Push Summary", len(test_cases) - failed_count, failed_count)

    sys.exit(0 if failed_count == 0 else 1)


if __name__ == '__main__':
    cli()

"""Command-line interface for receipt field extraction and OCR processing."""

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from tqdm import tqdm

from .config import PipelineSettings, load_scoring_weights
from .errors import AllAttemptsFailedError, EngineInitializationError
from .models import OcrStatus, ReceiptJob
from .ocr import SharedRecognitionEngine, create_engine_factory
from .orchestrator import RecognitionOrchestrator
from .parse import ReceiptFieldExtractor
from .worker import InMemoryJobQueue, JsonReceiptStore, ReceiptWorker, job_metadata, serve

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)


def _load_settings(engine: Optional[str], lang: Optional[str], concurrency: Optional[int],
                   single_pass: bool, rules: Optional[Path]) -> PipelineSettings:
    """Environment settings with command-line overrides applied."""
    settings = PipelineSettings.from_env()
    overrides: Dict[str, Any] = {}
    if engine:
        overrides['engine'] = engine
    if lang:
        overrides['language'] = lang
    if concurrency:
        overrides['concurrency'] = concurrency
    if single_pass:
        overrides['multi_pass'] = False
    if rules:
        overrides['scoring'] = load_scoring_weights(rules)
    return dataclasses.replace(settings, **overrides)


def _build_orchestrator(settings: PipelineSettings):
    engine = SharedRecognitionEngine(create_engine_factory(settings), verbose=settings.verbose)
    return engine, RecognitionOrchestrator(engine, settings=settings)


def _set_debug(debug: bool):
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        click.echo("Debug mode enabled - detailed parsing logs will be shown")


def pipeline_options(func):
    """Options shared by the commands that drive the recognition engine."""
    options = [
        click.option('--engine', type=click.Choice(['tesseract', 'yomitoku']), default=None,
                     help='Recognition engine (default: OCR_ENGINE or tesseract)'),
        click.option('--lang', default=None, help='Language hint, e.g. jpn+eng'),
        click.option('--concurrency', type=int, default=None,
                     help='Receipts processed at once (default: OCR_CONCURRENCY or 5)'),
        click.option('--single-pass', is_flag=True, help='Only recognize the original image'),
        click.option('--rules', type=click.Path(exists=True, dir_okay=False, path_type=Path),
                     default=None, help='Scoring weights YAML file'),
        click.option('--debug', is_flag=True, help='Enable debug output'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
def cli():
    """Receipt OCR - recover merchant, date and total from receipt images."""
    pass


@cli.command()
@click.argument('files', nargs=-1, required=True,
                type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--rules', type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help='Scoring weights YAML file')
@click.option('--explain', is_flag=True, help='Include per-field parsing metadata')
@click.option('--debug', is_flag=True, help='Enable debug output')
def extract(files: List[Path], rules: Optional[Path], explain: bool, debug: bool):
    """
    Extract fields from already-recognized text files.

    Example:
        receipts extract ./ocr/receipt_001.txt
    """
    _set_debug(debug)
    extractor = ReceiptFieldExtractor(weights=load_scoring_weights(rules))

    output = []
    for path in files:
        text = path.read_text(encoding='utf-8')
        entry = {'file': str(path), **extractor.extract(text).to_dict()}
        if explain:
            entry['explain'] = extractor.explain(text)
        output.append(entry)

    click.echo(json.dumps(output, ensure_ascii=False, indent=2, default=str))


@cli.command()
@click.argument('images', nargs=-1, required=True,
                type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--out', 'output_dir', type=click.Path(file_okay=False, path_type=Path), default=None,
              help='Write one JSON result per receipt here instead of printing')
@pipeline_options
def process(images: List[Path], output_dir: Optional[Path], engine: Optional[str], lang: Optional[str],
            concurrency: Optional[int], single_pass: bool, rules: Optional[Path], debug: bool):
    """
    Recognize receipt images (or PDFs) and extract their fields.

    Example:
        receipts process ./receipts/*.jpg --out ./out
    """
    _set_debug(debug)
    try:
        settings = _load_settings(engine, lang, concurrency, single_pass, rules)
    except ValueError as e:
        raise click.ClickException(str(e))

    logger.info(f"Processing {len(images)} receipt(s) with {settings.engine} "
                f"(multi-pass={settings.multi_pass}, concurrency={settings.concurrency})")

    try:
        results = asyncio.run(_process_images(list(images), settings))
    except EngineInitializationError as e:
        raise click.ClickException(f"Recognition engine unavailable: {e}")

    if output_dir:
        output_dir.mkdir(parents=True, exist_ok=True)
        for result in results:
            json_path = output_dir / f"{Path(result['file']).stem}.json"
            with open(json_path, 'w', encoding='utf-8') as f:
                json.dump(result, f, ensure_ascii=False, indent=2)
        click.echo(f"Results written to: {output_dir}")
    else:
        click.echo(json.dumps(results, ensure_ascii=False, indent=2))

    failed = sum(1 for r in results if 'error' in r)
    click.echo(f"Processed: {len(results) - failed}, Failed: {failed}", err=True)
    if failed == len(results):
        sys.exit(1)


async def _process_images(images: List[Path], settings: PipelineSettings) -> List[Dict[str, Any]]:
    engine, orchestrator = _build_orchestrator(settings)
    slots = asyncio.Semaphore(settings.concurrency)

    async def process_one(path: Path, pbar: tqdm) -> Dict[str, Any]:
        async with slots:
            try:
                result = await orchestrator.run(path)
                entry = {
                    'file': str(path),
                    **result.fields.to_dict(),
                    'bestStrategy': result.best_attempt.strategy_name,
                    'attempts': [
                        {'strategy': a.strategy_name, 'qualityScore': a.quality_score,
                         'confidence': a.confidence}
                        for a in result.attempts
                    ],
                }
            except AllAttemptsFailedError as e:
                logger.error(f"Failed to process {path}: {e}")
                entry = {'file': str(path), 'error': str(e)}
            pbar.update(1)
            return entry

    try:
        with tqdm(total=len(images), desc="Processing receipts") as pbar:
            return list(await asyncio.gather(*(process_one(p, pbar) for p in images)))
    finally:
        await engine.close()


@cli.command()
@click.option('--jobs', 'jobs_file', required=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='JSON Lines file of {"receiptId", "imagePath", "userId"} jobs')
@click.option('--store', 'store_dir', required=True, type=click.Path(file_okay=False, path_type=Path),
              help='Directory for receipt status records')
@click.option('--attempts', default=3, show_default=True, type=int, help='Deliveries per job')
@click.option('--backoff', default=1.0, show_default=True, type=float,
              help='Base retry delay in seconds (doubles per attempt)')
@pipeline_options
def worker(jobs_file: Path, store_dir: Path, attempts: int, backoff: float, engine: Optional[str],
           lang: Optional[str], concurrency: Optional[int], single_pass: bool, rules: Optional[Path],
           debug: bool):
    """
    Consume OCR jobs and record receipt status transitions.

    Example:
        receipts worker --jobs jobs.jsonl --store ./receipts_db
    """
    _set_debug(debug)
    try:
        settings = _load_settings(engine, lang, concurrency, single_pass, rules)
    except ValueError as e:
        raise click.ClickException(str(e))

    jobs = []
    with open(jobs_file, 'r', encoding='utf-8') as f:
        for line_number, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                jobs.append(ReceiptJob.from_dict(json.loads(line)))
            except (ValueError, TypeError) as e:
                raise click.ClickException(f"{jobs_file}:{line_number}: invalid job: {e}")

    try:
        stats = asyncio.run(_run_worker(jobs, store_dir, settings, attempts, backoff))
    except EngineInitializationError as e:
        raise click.ClickException(f"Recognition engine unavailable: {e}")

    click.echo("\n" + "=" * 50)
    click.echo("WORKER SUMMARY")
    click.echo("=" * 50)
    click.echo(f"Jobs: {len(jobs)}")
    click.echo(f"Succeeded: {stats['processed']}")
    click.echo(f"Failed deliveries: {stats['failed']} (retried: {stats['retried']})")
    click.echo(f"Records: {store_dir}")


async def _run_worker(jobs: List[ReceiptJob], store_dir: Path, settings: PipelineSettings,
                      attempts: int, backoff: float) -> Dict[str, int]:
    queue = InMemoryJobQueue(attempts=attempts, backoff_base=backoff)
    store = JsonReceiptStore(store_dir)
    for job in jobs:
        await store.update_status(job.receipt_id, OcrStatus.PENDING, metadata=job_metadata(job))
        await queue.add(job)

    engine, orchestrator = _build_orchestrator(settings)
    consumer = ReceiptWorker(queue, store, orchestrator,
                             concurrency=settings.concurrency)
    try:
        return await serve(consumer, engine)
    finally:
        await queue.close()


if __name__ == '__main__':
    cli()

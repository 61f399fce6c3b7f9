#!/usr/bin/env python3
"""
Payment Proof Validator - CLI Entry Point

Validates uploaded maintenance-payment proofs (UPI screenshots, bank
transfer confirmations, cheques, cash receipts) with OCR, field extraction,
AI classification, duplicate detection and image heuristics.
"""

import click
import sys
import logging
import mimetypes
import uuid
from pathlib import Path

from payproof.config import Config
from payproof.fetcher import ProofFetchError
from payproof.models import ValidationRequest
from payproof.pipeline import ValidationPipeline

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="1.0.0")
def cli():
    """Payment Proof Validator - automated checks for payment screenshots."""
    pass


@cli.command()
@click.argument('sources', nargs=-1, required=True)
@click.option(
    '--config', '-c',
    default='config.toml',
    help='Path to configuration file'
)
@click.option(
    '--submission-id', '-s',
    help='Submission id (only with a single source; generated when omitted)'
)
@click.option(
    '--file-type', '-t',
    help='Declared MIME type (guessed from the file name when omitted)'
)
@click.option('--flat', help='Flat number owning the submission')
@click.option('--collection', help='Collection the submission pays into')
@click.option(
    '--output', '-o',
    default=None,
    help='Directory to write JSON results to'
)
@click.option(
    '--verbose', '-v',
    is_flag=True,
    help='Enable verbose logging'
)
def validate(sources, config: str, submission_id: str, file_type: str, flat: str,
             collection: str, output: str, verbose: bool):
    """Validate one or more payment proofs (local paths or URLs)."""
    if submission_id and len(sources) > 1:
        click.echo("❌ --submission-id can only be used with a single source", err=True)
        sys.exit(2)

    try:
        if not Path(config).exists():
            click.echo(f"❌ Configuration file not found: {config}", err=True)
            sys.exit(1)

        cfg = Config.load(config)
        pipeline = ValidationPipeline.from_config(cfg)

        if verbose:
            logging.getLogger().setLevel(logging.DEBUG)

        click.echo(f"🚀 Validating {len(sources)} proof(s)...")

        results = []
        fetch_failures = 0
        try:
            for source in sources:
                request = ValidationRequest(
                    payment_submission_id=submission_id or str(uuid.uuid4()),
                    file_url=source,
                    file_type=file_type or mimetypes.guess_type(source)[0] or "image/jpeg",
                )
                if flat or collection:
                    pipeline.store.register_submission(
                        request.payment_submission_id, flat_number=flat, collection_name=collection
                    )

                try:
                    response = pipeline.validate(request)
                except ProofFetchError as e:
                    click.echo(f"⚠️  {source}: {e} (verdict left PENDING, resubmit to retry)", err=True)
                    fetch_failures += 1
                    continue

                results.append((request.payment_submission_id, response))
                if output:
                    pipeline.save_response(request.payment_submission_id, response, output)
        finally:
            pipeline.shutdown()

        pipeline.display_summary(results)

        if fetch_failures > 0:
            click.echo(f"⚠️  Completed with {fetch_failures} fetch failure(s)")
            sys.exit(1)
        else:
            click.echo("✅ Validation completed")
            sys.exit(0)

    except KeyboardInterrupt:
        click.echo("\n❌ Validation interrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"❌ Validation failed: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


@cli.command()
@click.argument('submission_id')
@click.option(
    '--config', '-c',
    default='config.toml',
    help='Path to configuration file'
)
def history(submission_id: str, config: str):
    """Show the verdict history of a submission, oldest first."""
    from payproof.store import ValidationStore

    try:
        cfg = Config.load(config)
        store = ValidationStore(cfg)
        verdicts = store.verdict_history(submission_id)

        if not verdicts:
            click.echo(f"No verdicts recorded for {submission_id}")
            return

        click.echo(f"📜 Verdict history for {submission_id}")
        click.echo("=" * 50)
        for verdict in verdicts:
            click.echo(f"{verdict.validated_at:%Y-%m-%d %H:%M:%S}  {verdict.status.value:<14} "
                       f"{verdict.confidence_score:5.1f}  {verdict.reason}")

    except Exception as e:
        click.echo(f"❌ Failed to read history: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option(
    '--config', '-c',
    default='config.toml',
    help='Path to configuration file'
)
def validate_config(config: str):
    """Validate configuration file and dependencies."""
    try:
        click.echo("🔍 Validating configuration...")

        cfg = Config.load(config)
        click.echo(f"✅ Configuration loaded: {config}")

        # Classification key is required; the OCR key only degrades to the fallback engine
        try:
            if cfg.get_api_key():
                click.echo(f"✅ API key found: {cfg.classification.api_key_file}")
            else:
                click.echo(f"❌ Empty API key file: {cfg.classification.api_key_file}", err=True)
                sys.exit(1)
        except FileNotFoundError as e:
            click.echo(f"❌ API key file not found: {e}", err=True)
            sys.exit(1)

        try:
            cfg.get_ocr_api_key()
            click.echo(f"✅ OCR API key found: {cfg.ocr.primary_api_key_file}")
        except OSError:
            click.echo(f"⚠️  OCR API key missing, only {cfg.ocr.fallback_language} Tesseract fallback will run")

        import pytesseract
        try:
            click.echo(f"✅ Tesseract available: {pytesseract.get_tesseract_version()}")
        except pytesseract.TesseractNotFoundError:
            click.echo("⚠️  Tesseract binary not found, fallback OCR will fail")

        click.echo("🤖 Building AI client (no request is sent)...")
        from payproof.classifier import create_ai_client

        try:
            create_ai_client(cfg)
            click.echo(f"✅ AI client configured: {cfg.classification.provider} ({cfg.classification.model})")
        except Exception as e:
            click.echo(f"❌ AI client could not be built: {e}", err=True)
            sys.exit(1)

        click.echo("🎉 Configuration validation successful!")

    except Exception as e:
        click.echo(f"❌ Configuration validation failed: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option(
    '--config', '-c',
    default='config.toml',
    help='Path to configuration file'
)
def init_db(config: str):
    """Create the validation tables in the configured database."""
    from payproof.store import ValidationStore

    try:
        cfg = Config.load(config)
        url = cfg.storage.database_url
        if url.startswith("sqlite:///"):
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

        ValidationStore(cfg).create_tables()
        click.echo(f"✅ Database ready: {url}")
    except Exception as e:
        click.echo(f"❌ Database initialisation failed: {e}", err=True)
        sys.exit(1)


@cli.command()
def setup():
    """Interactive setup wizard for first-time configuration."""
    click.echo("🔧 Payment Proof Validator Setup")
    click.echo("=" * 50)

    if Path("config.toml").exists():
        if not click.confirm("Configuration file already exists. Overwrite?"):
            click.echo("Setup cancelled.")
            return

    click.echo("\n1. Classification Provider")
    provider = click.prompt(
        "Choose AI provider",
        type=click.Choice(['openai', 'anthropic']),
        default='openai'
    )

    if provider == 'openai':
        model = click.prompt("OpenAI model", default="gpt-4o-mini")
        api_key_file = ".secrets/openai_key"
    else:
        model = click.prompt("Anthropic model", default="claude-3-haiku-20240307")
        api_key_file = ".secrets/anthropic_key"

    secrets_dir = Path(".secrets")
    secrets_dir.mkdir(exist_ok=True)

    api_key = click.prompt(f"Enter your {provider.upper()} API key", hide_input=True)
    with open(api_key_file, 'w') as f:
        f.write(api_key)
    click.echo(f"✅ API key saved to {api_key_file}")

    click.echo("\n2. OCR Configuration")
    vision_key_file = ".secrets/google_vision_key"
    vision_key = click.prompt(
        "Google Vision API key (leave blank to use Tesseract only)",
        default="", show_default=False, hide_input=True
    )
    if vision_key:
        with open(vision_key_file, 'w') as f:
            f.write(vision_key)
        click.echo(f"✅ OCR API key saved to {vision_key_file}")

    click.echo("\n3. Storage")
    database_url = click.prompt("Database URL", default="sqlite:///./data/payproof.db")

    config_content = f"""[classification]
provider = "{provider}"
model = "{model}"
api_key_file = "{api_key_file}"
timeout_seconds = 30
temperature = 0.0

[ocr]
primary_engine = "google_vision"
primary_api_key_file = "{vision_key_file}"
primary_timeout_seconds = 15
fallback_language = "eng"
always_run_fallback = false
max_file_size_mb = 10

[extraction]
source = "winner"

[duplicates]
hash_size = 8
near_match_max_distance = 0

[heuristics]
min_width = 200
min_height = 300
max_width = 2000
max_height = 4000

[decision]
ocr_weight = 0.3
fields_weight = 0.3
classification_weight = 0.4
high_ocr_confidence = 80
reject_confidence = 80

[storage]
database_url = "{database_url}"

[output]
log_level = "INFO"
log_file = "payproof.log"
json_indent = 2
console_summary = true
"""

    with open("config.toml", 'w') as f:
        f.write(config_content)

    click.echo("✅ Configuration saved to config.toml")
    click.echo("\n🎉 Setup complete! You can now run:")
    click.echo("  python main.py init-db")
    click.echo("  python main.py validate path/to/screenshot.png")


if __name__ == "__main__":
    cli()

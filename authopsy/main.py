import asyncio
import json
import logging
import signal
import sys
from typing import Optional, List

import click
from pythonjsonlogger import jsonlogger

from . import __version__
from .comparator import Comparator
from .config import (
    ScanConfig,
    PathFilters,
    InputError,
    DEFAULT_FUZZ_CONCURRENCY,
    DEFAULT_SCAN_CONCURRENCY,
    load_bodies,
    load_config,
    parse_params,
    split_list,
    validate_config,
)
from .endpoints import Endpoint, parse_endpoint_list
from .evidence import EvidenceStore
from .findings import Severity, at_or_above
from .identities import build_credentials
from .openapi import load_document, parse_document, spec_base_url
from .reporter import (
    build_report,
    load_report,
    render_html,
    render_markdown,
    write_html_report,
    write_json_report,
    write_markdown_summary,
)
from .resolver import encode_body_templates
from .scanner import ScanOutcome, run_fuzz, run_scan


@click.group(help="Authopsy - differential authorization scanner for REST APIs")
def app():
    """Authopsy CLI."""
    pass


logger = logging.getLogger(__name__)

SEVERITY_CHOICES = click.Choice([s.value for s in Severity if s is not Severity.OK], case_sensitive=False)


def setup_logging(log_level: str = "WARNING", log_file: Optional[str] = None):
    """Setup structured logging."""
    loggers = [logging.getLogger(name) for name in ['authopsy', '__main__']]

    formatter = jsonlogger.JsonFormatter(
        fmt='%(asctime)s %(name)s %(levelname)s %(message)s'
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    for logger_instance in loggers:
        logger_instance.handlers.clear()
        logger_instance.setLevel(getattr(logging, log_level.upper()))
        logger_instance.addHandler(console_handler)
        logger_instance.propagate = False

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        for logger_instance in loggers:
            logger_instance.addHandler(file_handler)


def _common_options(func):
    options = [
        click.option('--config', 'config_file', type=click.Path(), help='JSON configuration file'),
        click.option('-u', '--url', help='Target base URL (defaults to the spec server URL)'),
        click.option('-s', '--spec', help='OpenAPI/Swagger spec file (JSON or YAML)'),
        click.option('-e', '--endpoints', help='Comma separated endpoint list, e.g. "GET /api/users,DELETE /api/users/{id}"'),
        click.option('--user', envvar='AUTHOPSY_USER', help='User credential value'),
        click.option('--header', help='Credential header name [default: Authorization]'),
        click.option('-c', '--concurrency', type=int, help='Maximum requests in flight'),
        click.option('-t', '--timeout', type=float, help='Per-request timeout in seconds [default: 10]'),
        click.option('-p', '--params', help='Parameter overrides, e.g. "id=42,org=acme"'),
        click.option('-b', '--bodies', type=click.Path(), help='JSON file mapping "METHOD /path" to a request body'),
        click.option('--skip-paths', help='Comma separated paths (prefix or glob) never requested'),
        click.option('--ignore', help='Comma separated JSON field patterns ignored when diffing'),
        click.option('--threshold', type=float, help='Relative size difference treated as significant [default: 0.05]'),
        click.option('--no-default-params', is_flag=True, help='Fail endpoints whose path parameters have no value instead of using 1/test'),
        click.option('--insecure', is_flag=True, help='Do not verify TLS certificates'),
        click.option('--follow-redirects', is_flag=True, help='Follow HTTP redirects'),
        click.option('-o', '--output', help='Write the JSON report to this file'),
        click.option('--markdown', help='Write a Markdown summary to this file'),
        click.option('--html', help='Write an HTML report to this file'),
        click.option('--evidence-dir', help='Store every exchange under this directory'),
        click.option('--fail-on', type=SEVERITY_CHOICES, help='Exit with status 2 when findings at or above this severity exist'),
        click.option('-v', '--verbose', is_flag=True, help='Log at INFO level'),
        click.option('--log-level', default=None, help='Logging level [default: WARNING]'),
        click.option('--log-file', default=None, help='Also write logs to this file'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_config(mode: str, **opts) -> ScanConfig:
    """Load the optional config file and overlay command-line values."""
    config = load_config(opts['config_file']) if opts.get('config_file') else ScanConfig()

    if opts.get('url'):
        config.base_url = opts['url']
    if opts.get('spec'):
        config.spec_file = opts['spec']
    if opts.get('endpoints'):
        config.endpoints = opts['endpoints']
    if opts.get('admin'):
        config.credentials.admin = opts['admin']
    if opts.get('user'):
        config.credentials.user = opts['user']
    if opts.get('anon'):
        config.credentials.anon = opts['anon']
    if opts.get('header'):
        config.credentials.header_name = opts['header']

    skip = split_list(opts.get('skip_paths'))
    public = split_list(opts.get('public_paths'))
    if skip or public:
        config.filters = PathFilters(
            skip_paths=config.filters.skip_paths | frozenset(skip),
            public_paths=config.filters.public_paths | frozenset(public)
        )

    config.params.update(parse_params(opts.get('params')))
    if opts.get('bodies'):
        config.bodies.update(load_bodies(opts['bodies']))
    config.ignore_fields.extend(split_list(opts.get('ignore')))
    config.sensitive_fields.extend(split_list(opts.get('sensitive')))

    options = config.options
    if opts.get('concurrency') is not None:
        options.concurrency = opts['concurrency']
    if options.concurrency is None:
        options.concurrency = DEFAULT_SCAN_CONCURRENCY if mode == 'scan' else DEFAULT_FUZZ_CONCURRENCY
    if opts.get('timeout') is not None:
        options.timeout_seconds = opts['timeout']
    if opts.get('threshold') is not None:
        options.size_threshold = opts['threshold']
    if opts.get('no_default_params'):
        options.allow_default_params = False
    if opts.get('insecure'):
        options.verify_ssl = False
    if opts.get('follow_redirects'):
        options.follow_redirects = True

    if opts.get('output'):
        config.output.output_file = opts['output']
    if opts.get('markdown'):
        config.output.markdown_file = opts['markdown']
    if opts.get('html'):
        config.output.html_file = opts['html']
    if opts.get('evidence_dir'):
        config.output.evidence_dir = opts['evidence_dir']

    return config


def _load_endpoints(config: ScanConfig) -> List[Endpoint]:
    """Endpoints from the spec file and/or the manual list; fills base_url from the spec."""
    endpoints: List[Endpoint] = []
    if config.spec_file:
        document = load_document(config.spec_file)
        endpoints.extend(parse_document(document))
        if not config.base_url:
            config.base_url = spec_base_url(document) or ''
    if config.endpoints:
        seen = {endpoint.key for endpoint in endpoints}
        endpoints.extend(e for e in parse_endpoint_list(config.endpoints) if e.key not in seen)
    if not endpoints:
        raise InputError("No endpoints to scan")
    return endpoints


def _on_interrupt(cancel_event: asyncio.Event):
    if not cancel_event.is_set():
        click.echo("Interrupted: finishing in-flight requests, press Ctrl+C again to abort", err=True)
        cancel_event.set()
    else:
        raise KeyboardInterrupt


async def _run_cancellable(session_factory) -> ScanOutcome:
    """Run a session with SIGINT wired to its cancel event."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt, cancel_event)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        logger.debug("Signal handlers unavailable; Ctrl+C aborts immediately")
        installed = False

    try:
        return await session_factory(cancel_event)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _print_summary(report: dict):
    summary = report['summary']
    counts = ', '.join(
        f"{key}={summary.get(key, 0)}"
        for key in ['CRITICAL', 'HIGH', 'MEDIUM', 'LOW', 'OK', 'errors', 'unclassified']
    )
    click.echo(f"{report['mode'].capitalize()} of {report['target']}: {len(report['results'])} endpoints ({counts})")

    for finding in report['findings']:
        if finding['rule_id'] == 'ok':
            continue
        label = finding['severity'] or finding['rule_id'].upper()
        click.echo(f"  [{label}] {finding['endpoint']} {finding['rule_id']}: {finding['description']}")

    if report.get('not_scanned'):
        click.echo(f"  {len(report['not_scanned'])} endpoints not scanned (cancelled)")


def _finish(config: ScanConfig, outcome: ScanOutcome, credentials, fail_on: Optional[str]):
    report = build_report(outcome, config.base_url, credentials)

    if config.output.output_file:
        write_json_report(report, config.output.output_file)
        click.echo(f"Report written: {config.output.output_file}")
    if config.output.markdown_file:
        write_markdown_summary(report, config.output.markdown_file)
        click.echo(f"Markdown summary written: {config.output.markdown_file}")
    if config.output.html_file:
        write_html_report(report, config.output.html_file)
        click.echo(f"HTML report written: {config.output.html_file}")

    _print_summary(report)

    if fail_on:
        threshold = Severity.parse(fail_on)
        failing = at_or_above(outcome.findings, threshold)
        if failing:
            click.echo(f"{len(failing)} findings at or above {threshold.value}", err=True)
            sys.exit(2)


def _prepare(mode: str, opts: dict):
    setup_logging(opts.get('log_level') or ('INFO' if opts.get('verbose') else 'WARNING'), opts.get('log_file'))

    config = _build_config(mode, **opts)
    endpoints = _load_endpoints(config) if (config.spec_file or config.endpoints) else []
    validate_config(config, mode)
    credentials = build_credentials(config.credentials, require_admin=(mode == 'scan'))
    evidence = (
        EvidenceStore(config.output.evidence_dir, credentials.header_name)
        if config.output.evidence_dir else None
    )
    return config, endpoints, credentials, evidence


@app.command()
@_common_options
@click.option('--admin', envvar='AUTHOPSY_ADMIN', help='Admin credential value')
@click.option('--anon', envvar='AUTHOPSY_ANON', help='Credential sent as Anonymous (omitted by default)')
@click.option('--public-paths', help='Comma separated paths (prefix or glob) that are intentionally public')
@click.option('--sensitive', help='Extra sensitive field name patterns (regex), comma separated')
def scan(**opts):
    """Replay endpoints as Admin, User and Anonymous and classify access-control defects."""
    try:
        config, endpoints, credentials, evidence = _prepare('scan', opts)
    except (InputError, ValueError, FileNotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    options = config.options
    comparator = Comparator.from_config(config.ignore_fields, config.sensitive_fields)

    async def session(cancel_event):
        return await run_scan(
            endpoints,
            credentials,
            config.filters,
            config.params,
            options.concurrency,
            options.timeout_seconds,
            base_url=config.base_url,
            body_templates=encode_body_templates(config.bodies),
            comparator=comparator,
            options=options,
            cancel_event=cancel_event,
            evidence=evidence
        )

    try:
        outcome = asyncio.run(_run_cancellable(session))
    except KeyboardInterrupt:
        click.echo("Scan aborted by user", err=True)
        sys.exit(1)

    _finish(config, outcome, credentials, opts.get('fail_on'))


@app.command()
@_common_options
def fuzz(**opts):
    """Probe endpoints as User with bypass parameters and headers."""
    try:
        config, endpoints, credentials, evidence = _prepare('fuzz', opts)
    except (InputError, ValueError, FileNotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    options = config.options

    async def session(cancel_event):
        return await run_fuzz(
            endpoints,
            credentials,
            options.concurrency,
            base_url=config.base_url,
            timeout=options.timeout_seconds,
            filters=config.filters,
            overrides=config.params,
            body_templates=encode_body_templates(config.bodies),
            ignore_fields=config.ignore_fields,
            options=options,
            cancel_event=cancel_event,
            evidence=evidence
        )

    try:
        outcome = asyncio.run(_run_cancellable(session))
    except KeyboardInterrupt:
        click.echo("Fuzz aborted by user", err=True)
        sys.exit(1)

    _finish(config, outcome, credentials, opts.get('fail_on'))


@app.command()
@click.option('-i', '--input', 'input_file', required=True, help='JSON report written by scan or fuzz')
@click.option('-f', '--format', 'output_format', type=click.Choice(['html', 'markdown', 'json']), default='html')
@click.option('-o', '--output', help='Write to this file instead of stdout')
def report(input_file, output_format, output):
    """Render a saved JSON report."""
    try:
        data = load_report(input_file)
    except (InputError, FileNotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if output_format == 'json':
        rendered = json.dumps(data, indent=2)
    elif output_format == 'html':
        rendered = render_html(data)
    else:
        rendered = render_markdown(data)

    if output:
        with open(output, 'w') as f:
            f.write(rendered)
        click.echo(f"Report written: {output}")
    else:
        click.echo(rendered)


@app.command()
@click.argument('spec_file')
@click.option('--json', 'as_json', is_flag=True, help='Print endpoints as JSON')
def parse(spec_file, as_json):
    """List the endpoints an OpenAPI/Swagger spec describes."""
    try:
        document = load_document(spec_file)
        endpoints = parse_document(document)
    except (InputError, FileNotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps([endpoint.to_dict() for endpoint in endpoints], indent=2))
        return

    base_url = spec_base_url(document)
    if base_url:
        click.echo(f"Server: {base_url}")
    click.echo(f"Found {len(endpoints)} endpoints:")
    for endpoint in endpoints:
        click.echo(f"  {endpoint.display_path()}")


@app.command()
@click.argument('config_file')
@click.option('--mode', type=click.Choice(['scan', 'fuzz']), default='scan')
def validate(config_file, mode):
    """Validate a configuration file."""
    try:
        config = load_config(config_file)
        validate_config(config, mode)
        build_credentials(config.credentials, require_admin=(mode == 'scan'))
        click.echo("✓ Configuration is valid")
        click.echo(f"Target: {config.base_url}")
        click.echo(f"Endpoints: {config.spec_file or config.endpoints}")
    except (InputError, FileNotFoundError) as e:
        click.echo(f"✗ Configuration validation failed: {e}", err=True)
        sys.exit(1)


@app.command()
def version():
    """Show version information."""
    click.echo(f"Authopsy v{__version__}")
    click.echo("Differential authorization scanner for REST APIs")


if __name__ == "__main__":
    app()

"""
Command-line interface for the control statement service.

Usage examples:
    python -m kh_statement.cli overview --month 2026-01
    python -m kh_statement.cli generate --month 2026-01 --type B
    python -m kh_statement.cli generate --month 2026-01 --type N --reason-date 15.02.2026
    python -m kh_statement.cli mark-submitted --month 2026-01
    python -m kh_statement.cli year 2026
    python -m kh_statement.cli settings --vat-id CZ12345678 --name "Jan Novak"
    python -m kh_statement.cli serve --port 8000

Paths default to the KH_* environment variables (see `kh_statement.config`).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from .config import AppSettings, configure_logging, load_settings
from .errors import KhStatementError
from .repository import InMemoryInvoiceRepository
from .schema import FilingType, GenerationRequest, Period, TaxpayerSettingsUpdate
from .service import ControlStatementService
from .submissions import JSONFileSubmissionStore, SubmissionManager

app = typer.Typer(help="VAT control statement (KH) generation CLI.")


def _settings(
    data_file: Optional[str],
    submissions_file: Optional[str],
    output_dir: Optional[str],
) -> AppSettings:
    settings = load_settings()
    updates = {}
    if data_file:
        updates["data_file"] = Path(data_file)
    if submissions_file:
        updates["submissions_file"] = Path(submissions_file)
    if output_dir:
        updates["output_dir"] = Path(output_dir)
    return settings.model_copy(update=updates)


def _build_service(settings: AppSettings) -> ControlStatementService:
    configure_logging(settings.log_level)
    repository = InMemoryInvoiceRepository.from_file(settings.data_file)
    try:
        store = JSONFileSubmissionStore(settings.submissions_file)
    except KhStatementError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    manager = SubmissionManager(store, settings.output_dir)
    return ControlStatementService(repository, manager, software_name=settings.software_name)


def _period(month: str) -> Period:
    try:
        return Period.parse(month)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)


DATA_FILE = typer.Option(None, "--data-file", help="Invoice workspace JSON.")
SUBMISSIONS_FILE = typer.Option(None, "--submissions-file", help="Submission history JSON.")
OUTPUT_DIR = typer.Option(None, "--output-dir", help="Base directory for generated XML.")
MONTH = typer.Option(..., "--month", help="Reporting period as YYYY-MM.")


@app.command()
def overview(
    month: str = MONTH,
    data_file: Optional[str] = DATA_FILE,
    submissions_file: Optional[str] = SUBMISSIONS_FILE,
) -> None:
    """
    Show invoices per section, submission status and unclassified invoices.
    """
    period = _period(month)
    service = _build_service(_settings(data_file, submissions_file, None))
    result = service.overview(period)

    typer.echo(f"Period: {period.key}  status: {result.status.value}")
    for section, items in result.sections.items():
        typer.echo(f"  {section}: {len(items)} invoice(s)")
    if result.unclassified:
        typer.echo(f"Unclassified: {', '.join(i.invoice.id for i in result.unclassified)}")


@app.command()
def generate(
    month: str = MONTH,
    filing_type: FilingType = typer.Option(
        FilingType.REGULAR, "--type", help="B regular, O corrective, N follow-up, E follow-up corrective."
    ),
    reason_date: Optional[str] = typer.Option(
        None, "--reason-date", help="Date the reasons for a follow-up filing were found (DD.MM.YYYY)."
    ),
    challenge_ref: Optional[str] = typer.Option(
        None, "--challenge-ref", help="Reference number of the tax office challenge."
    ),
    data_file: Optional[str] = DATA_FILE,
    submissions_file: Optional[str] = SUBMISSIONS_FILE,
    output_dir: Optional[str] = OUTPUT_DIR,
) -> None:
    """
    Generate the control statement XML and record a new submission.
    """
    period = _period(month)
    service = _build_service(_settings(data_file, submissions_file, output_dir))
    request = GenerationRequest(
        filing_type=filing_type, reason_date=reason_date, challenge_ref=challenge_ref
    )

    try:
        result = service.generate(period, request)
    except (KhStatementError, OSError) as exc:
        typer.echo(f"Generation failed: {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Generated {result.document_path}")
    typer.echo(f"Submission: {result.submission.id} ({result.submission.status.value})")
    if result.unclassified:
        typer.echo(
            f"Warning: {len(result.unclassified)} unclassified invoice(s) left out: "
            f"{', '.join(result.unclassified)}",
            err=True,
        )


@app.command("mark-submitted")
def mark_submitted(
    month: str = MONTH,
    submissions_file: Optional[str] = SUBMISSIONS_FILE,
) -> None:
    """
    Confirm the current submission of the month as filed.
    """
    period = _period(month)
    service = _build_service(_settings(None, submissions_file, None))
    try:
        submission = service.mark_submitted(period)
    except KhStatementError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Submission {submission.id} marked as submitted")


@app.command()
def history(
    month: str = MONTH,
    submissions_file: Optional[str] = SUBMISSIONS_FILE,
) -> None:
    """
    List all submissions recorded for the month, oldest first.
    """
    period = _period(month)
    service = _build_service(_settings(None, submissions_file, None))
    rows = service.history(period)
    if not rows:
        typer.echo(f"No submissions for {period.key} (draft)")
        return
    for sub in rows:
        typer.echo(
            f"{sub.created_at.isoformat()}  {sub.id}  {sub.filing_type.value}  "
            f"{sub.status.value}  {sub.document_path or ''}"
        )


@app.command()
def summary(
    month: str = MONTH,
    data_file: Optional[str] = DATA_FILE,
    submissions_file: Optional[str] = SUBMISSIONS_FILE,
) -> None:
    """
    Print invoice counts and VAT totals for the month.
    """
    period = _period(month)
    service = _build_service(_settings(data_file, submissions_file, None))
    s = service.summary(period)
    typer.echo(f"Outgoing: {s.outgoing_count} invoice(s), total {s.outgoing_total}, tax {s.output_tax}")
    typer.echo(f"Incoming: {s.incoming_count} invoice(s), total {s.incoming_total}, tax {s.input_tax}")
    typer.echo(f"VAT difference: {s.vat_difference}")
    typer.echo(f"Verified: {s.verified_count}/{s.total_count}")
    typer.echo(f"KH status: {s.kh_status.value if s.kh_status else 'draft'}")


@app.command()
def months(
    data_file: Optional[str] = DATA_FILE,
    submissions_file: Optional[str] = SUBMISSIONS_FILE,
) -> None:
    """
    List every month that holds invoices, newest first.
    """
    service = _build_service(_settings(data_file, submissions_file, None))
    rows = service.months()
    if not rows:
        typer.echo("No invoices recorded")
        return
    for s in rows:
        typer.echo(
            f"{s.month}  {s.total_count} invoice(s)  VAT difference {s.vat_difference}  "
            f"KH {s.kh_status.value if s.kh_status else 'draft'}"
        )


@app.command()
def year(
    value: int = typer.Argument(..., help="Calendar year, e.g. 2026."),
    data_file: Optional[str] = DATA_FILE,
    submissions_file: Optional[str] = SUBMISSIONS_FILE,
) -> None:
    """
    Print the monthly summaries of one year and the yearly totals.
    """
    service = _build_service(_settings(data_file, submissions_file, None))
    result = service.year_summary(value)
    for s in result.months:
        typer.echo(f"{s.month}  output tax {s.output_tax}  input tax {s.input_tax}")
    t = result.totals
    typer.echo(f"Year {result.year}: {t.total_count} invoice(s), VAT difference {t.vat_difference}")


@app.command()
def settings(
    vat_id: Optional[str] = typer.Option(None, "--vat-id"),
    reg_no: Optional[str] = typer.Option(None, "--reg-no"),
    person_type: Optional[str] = typer.Option(None, "--person-type", help="F natural, P legal person."),
    tax_office_code: Optional[str] = typer.Option(None, "--tax-office-code"),
    name: Optional[str] = typer.Option(None, "--name"),
    street: Optional[str] = typer.Option(None, "--street"),
    city: Optional[str] = typer.Option(None, "--city"),
    postal_code: Optional[str] = typer.Option(None, "--postal-code"),
    email: Optional[str] = typer.Option(None, "--email"),
    data_file: Optional[str] = DATA_FILE,
) -> None:
    """
    Show the taxpayer settings, updating the given fields first.
    """
    service = _build_service(_settings(data_file, None, None))
    update = TaxpayerSettingsUpdate(
        vat_id=vat_id,
        reg_no=reg_no,
        person_type=person_type,
        tax_office_code=tax_office_code,
        name=name,
        street=street,
        city=city,
        postal_code=postal_code,
        email=email,
    )
    if update.model_dump(exclude_none=True):
        current = service.update_settings(update)
    else:
        current = service.settings()
    for key, value in current.model_dump().items():
        typer.echo(f"{key}: {value}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
) -> None:
    """
    Run the HTTP API with uvicorn.
    """
    import uvicorn

    uvicorn.run("kh_statement.api.main:create_app", factory=True, host=host, port=port)


def main() -> None:
    """
    Entrypoint used when executing as a module.
    """
    app()


if __name__ == "__main__":
    main()

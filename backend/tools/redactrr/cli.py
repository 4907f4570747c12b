#!/usr/bin/env python3
"""
Redactrr CLI - Document redaction tool

Usage:
    python -m tools.redactrr redact /path/to/document.docx
    python -m tools.redactrr redact report.pdf --template rules.json --output clean_report.pdf
    python -m tools.redactrr preview /path/to/document.pdf --json
    python -m tools.redactrr batch ./reports/ --output-dir ./clean/
    python -m tools.redactrr validate-template rules.json --enrich

Exit codes:
    0  redacted and verified
    1  failed (bad template, unreadable document, verification failure)
    2  nothing to redact, document needs manual review
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from config import runtime_config
from errors import (
    ErrorCode,
    NoMatchesError,
    RedactrrError,
    TemplateValidationError,
    VerificationError,
    handle_tool_errors,
    success_response,
)
from logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_MANUAL_REVIEW = 2

SUPPORTED_SUFFIXES = (".docx", ".pdf")
MANUAL_REVIEW_CODES = (ErrorCode.DETECT_NO_MATCHES.value, ErrorCode.DETECT_NO_TEXT.value)


def response_exit_code(response: dict) -> int:
    """Map a success/error response dict to the CLI exit code."""
    if response.get("success"):
        return EXIT_OK
    if response["error"]["code"] in MANUAL_REVIEW_CODES:
        return EXIT_MANUAL_REVIEW
    return EXIT_FAILED


@handle_tool_errors("redact", logger)
def redact_response(redactor, input_path: Path, output_path=None, **kwargs) -> dict:
    """Run one redaction and shape it as a JSON-ready response."""
    outcome = redactor.redact(input_path, output_path, **kwargs)
    return success_response(
        output=outcome.output_url,
        verification=outcome.verification.to_dict(),
        report=outcome.report.to_dict(),
    )


@handle_tool_errors("preview", logger)
def preview_response(input_path: Path, template=None, use_llm=None) -> dict:
    from .pipeline import preview_redaction

    return success_response(preview_redaction(input_path, template=template, use_llm=use_llm))


def _print_failure(error: RedactrrError) -> None:
    print(f"\nFAILED: {error.message}")
    if isinstance(error, TemplateValidationError):
        for issue in error.issues:
            print(f"    - {issue}")
    elif isinstance(error, VerificationError):
        print(f"  {len(error.remaining)} fragment(s) survived redaction:")
        for item in error.remaining:
            # Location only; the text itself stays out of the terminal
            print(f"    - page {item.get('page')}")
    elif error.details:
        print(f"  {error.details}")


def cmd_redact(args) -> int:
    """Redact a document"""
    from .pipeline import Redactrr

    input_path = Path(args.file)
    output_path = Path(args.output) if args.output else None
    redactor = Redactrr(use_llm=args.use_llm)
    options = {"template": args.template, "document_id": args.document_id, "deadline": args.deadline}

    if args.json:
        response = redact_response(redactor, input_path, output_path, **options)
        print(json.dumps(response, indent=2))
        return response_exit_code(response)

    print(f"Redacting: {input_path.name}")
    if not args.use_llm:
        print("  (AI suggestions disabled, using template rules only)")

    try:
        outcome = redactor.redact(input_path, output_path, **options)
    except NoMatchesError as e:
        print(f"\nMANUAL REVIEW: {e.message}")
        if e.details:
            print(f"  {e.details}")
        return EXIT_MANUAL_REVIEW
    except RedactrrError as e:
        _print_failure(e)
        return EXIT_FAILED

    report = outcome.report
    print("\nOK: Success!")
    print(f"  Output: {outcome.output_url}")
    print(f"  Entities redacted: {report.total_entities_detected}")
    print(f"  Attempts: {report.attempts}")

    if report.counts_by_rule:
        print("\n  By rule:")
        for rule_id, count in sorted(report.counts_by_rule.items()):
            print(f"    {rule_id}: {count}")

    warnings = list(outcome.audit.warnings) if outcome.audit else []
    if report.unconfirmed:
        warnings.append(f"{len(report.unconfirmed)} entity(ies) without a confirmed position")
    if report.stream_failures:
        warnings.append(f"{len(report.stream_failures)} content stream(s) fell back to overlay only")
    if warnings:
        print("\n  Warnings:")
        for w in warnings:
            print(f"    - {w}")

    if args.report:
        report_path = Path(args.report)
        report_path.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
        print(f"\n  Report: {report_path}")

    return EXIT_OK


def cmd_preview(args) -> int:
    """Preview what would be redacted"""
    from .pipeline import preview_redaction

    input_path = Path(args.file)

    if args.json:
        response = preview_response(input_path, template=args.template, use_llm=args.use_llm)
        print(json.dumps(response, indent=2))
        return response_exit_code(response)

    print(f"Analyzing: {input_path.name}")

    try:
        result = preview_redaction(input_path, template=args.template, use_llm=args.use_llm)
    except RedactrrError as e:
        _print_failure(e)
        return EXIT_FAILED

    if "error" in result:
        print(f"Error: {result['error']}")
        return EXIT_MANUAL_REVIEW

    print(f"\nFound {result['entities_found']} entities:\n")

    # Group by rule
    by_rule = {}
    for entity in result["entities"]:
        by_rule.setdefault(entity["rule"], []).append(entity)

    for rule_id, entities in sorted(by_rule.items()):
        print(f"  {rule_id} ({len(entities)}):")
        for e in entities[:10]:  # Limit display
            text = e["text"][:50] + "..." if len(e["text"]) > 50 else e["text"]
            page = e["page"] if e["page"] is not None else "-"
            print(f"    - p.{page} {text}")
        if len(entities) > 10:
            print(f"    ... and {len(entities) - 10} more")
        print()

    if result.get("unconfirmed"):
        print(f"  {result['unconfirmed']} entity(ies) could not be positioned on the page")

    return EXIT_OK


def cmd_batch(args) -> int:
    """Redact multiple documents"""
    from .pipeline import Redactrr

    input_dir = Path(args.directory)
    output_dir = Path(args.output_dir) if args.output_dir else input_dir / "redacted"
    output_dir.mkdir(parents=True, exist_ok=True)

    redactor = Redactrr(use_llm=args.use_llm)

    # Find all supported files
    files = []
    for ext in SUPPORTED_SUFFIXES:
        files.extend(sorted(input_dir.glob(f"*{ext}")))

    print(f"Found {len(files)} documents in {input_dir}")
    print(f"Output directory: {output_dir}\n")

    success = 0
    review = 0
    failed = 0

    for i, file_path in enumerate(files, 1):
        print(f"[{i}/{len(files)}] {file_path.name}...", end=" ")

        output_path = output_dir / f"{file_path.stem}_REDACTED{file_path.suffix}"
        try:
            outcome = redactor.redact(file_path, output_path, template=args.template)
        except NoMatchesError as e:
            print(f"REVIEW ({e.message})")
            review += 1
            continue
        except RedactrrError as e:
            print(f"FAILED ({e.code.value})")
            failed += 1
            continue

        print(f"OK ({outcome.report.total_entities_detected} redactions)")
        success += 1

    print(f"\nComplete: {success} succeeded, {review} need review, {failed} failed")
    if failed:
        return EXIT_FAILED
    return EXIT_MANUAL_REVIEW if review else EXIT_OK


def cmd_validate_template(args) -> int:
    """Validate a template file, optionally adding missing version metadata"""
    from .templates import enrich_template_rules, validate_template

    path = Path(args.template_file)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"\nFAILED: Could not read template: {e}")
        return EXIT_FAILED

    if args.enrich and isinstance(raw, dict):
        raw = enrich_template_rules(raw)
        enriched = raw.pop("enriched")
        if enriched:
            path.write_text(json.dumps(raw, indent=2), encoding="utf-8")
            print(f"Enriched {enriched} rule(s) in {path.name}")

    try:
        template = validate_template(raw)
    except TemplateValidationError as e:
        _print_failure(e)
        return EXIT_FAILED

    print(f"\nOK: Template '{template.id}' is valid")
    print(f"  Rules: {len(template.rules)} ({len(template.pattern_rules)} pattern)")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Redactrr - Verified document redaction")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Redact command
    redact_parser = subparsers.add_parser("redact", help="Redact a document")
    redact_parser.add_argument("file", help="Document to redact (.docx or .pdf)")
    redact_parser.add_argument("--template", "-t", help="Template JSON (default: built-in rules)")
    redact_parser.add_argument("--output", "-o", help="Output path")
    redact_parser.add_argument("--document-id", help="Identifier recorded in the report")
    redact_parser.add_argument("--report", "-r", help="Write the JSON audit report here")
    redact_parser.add_argument("--deadline", type=float, help="Time budget in seconds")
    redact_parser.add_argument("--ai", dest="use_llm", action="store_true", help="Add AI entity suggestions")
    redact_parser.add_argument("--json", action="store_true", help="Output the result as JSON")

    # Preview command
    preview_parser = subparsers.add_parser("preview", help="Preview redactions")
    preview_parser.add_argument("file", help="Document to analyze")
    preview_parser.add_argument("--template", "-t", help="Template JSON")
    preview_parser.add_argument("--ai", dest="use_llm", action="store_true")
    preview_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # Batch command
    batch_parser = subparsers.add_parser("batch", help="Redact multiple documents")
    batch_parser.add_argument("directory", help="Directory containing documents")
    batch_parser.add_argument("--template", "-t", help="Template JSON")
    batch_parser.add_argument("--output-dir", "-o", help="Output directory")
    batch_parser.add_argument("--ai", dest="use_llm", action="store_true")

    # Template validation
    validate_parser = subparsers.add_parser("validate-template", help="Check a template file")
    validate_parser.add_argument("template_file", help="Template JSON")
    validate_parser.add_argument("--enrich", action="store_true", help="Add checksums to unversioned rules")

    return parser


COMMANDS = {
    "redact": cmd_redact,
    "preview": cmd_preview,
    "batch": cmd_batch,
    "validate-template": cmd_validate_template,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        setup_logging("DEBUG")
    elif getattr(args, "json", False):
        # Keep stdout parseable
        setup_logging("CRITICAL")
    else:
        setup_logging(runtime_config.log_level)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return EXIT_FAILED
    return command(args)


if __name__ == "__main__":
    sys.exit(main())

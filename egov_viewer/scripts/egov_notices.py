#!/usr/bin/env python3
"""CLI entrypoint for the e-Gov notice extractor."""
from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from egov_viewer.notice_extractor import (
    extract,
    parser,
    premium,
    renderer,
    synonyms,
)
from egov_viewer.notice_extractor.extract import ExtractionOptions, UniversalRecord

DEFAULT_OUTPUT = Path("_index")

logger = logging.getLogger("egov_viewer.notice_extractor.cli")


class OutputPaths:
    def __init__(self, out_dir: Path) -> None:
        self.out_dir = out_dir.resolve()
        self.extracted_path = self.out_dir / "extracted.jsonl"
        self.scan_report_path = self.out_dir / "scan_report.json"


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )


def resolve_input(path: str) -> Path:
    resolved = Path(path).expanduser().resolve()
    if not resolved.exists():
        raise SystemExit(f"Input not found: {resolved}")
    return resolved


def build_options(args: argparse.Namespace) -> ExtractionOptions:
    table = synonyms.DEFAULT_SYNONYM_TABLE
    synonyms_path = getattr(args, "synonyms", None)
    if synonyms_path:
        try:
            table = synonyms.load_synonym_table(Path(synonyms_path))
        except synonyms.SynonymTableError as exc:
            raise SystemExit(str(exc)) from exc
    return ExtractionOptions(
        table=table,
        title_strategy=getattr(args, "title_strategy", None) or "fingerprint",
    )


def load_record(path: Path, options: ExtractionOptions) -> tuple[parser.ElementNode, UniversalRecord]:
    text = parser.decode_document(path.read_bytes())
    try:
        tree = parser.parse_xml(text)
    except parser.MalformedXmlError as exc:
        raise SystemExit(f"{path.name}: {exc}") from exc
    return tree, extract.extract_universal_record(tree, options)


def command_scan(args: argparse.Namespace) -> None:
    target = resolve_input(args.path)
    base_path = target.parent if target.is_file() else target
    paths = OutputPaths(Path(args.out))
    options = build_options(args)
    logger.info("Scanning %s", target)
    results, files = parser.scan_directory(
        target, base_path, options=options, max_workers=args.workers
    )
    write_jsonl(
        paths.extracted_path,
        (
            {
                "file": result.source.path,
                "case": result.source.case_name,
                "xsl": result.detected_xsl,
                "record": result.record.to_dict(),
            }
            for result in results
            if result.record is not None
        ),
    )
    write_scan_report(paths, target, files)
    failed = sum(1 for result in files.values() if result.status == "error")
    logger.info(
        "Extracted %d documents from %s (%d failed)",
        len(files) - failed,
        target,
        failed,
    )


def command_show(args: argparse.Namespace) -> None:
    _, record = load_record(resolve_input(args.path), build_options(args))
    print(renderer.render_record(record))


def command_tree(args: argparse.Namespace) -> None:
    tree, _ = load_record(resolve_input(args.path), build_options(args))
    print(renderer.render_tree(tree))


def command_premiums(args: argparse.Namespace) -> None:
    _, record = load_record(resolve_input(args.path), build_options(args))
    rates = premium.resolve_rates(args.health_rate, args.pension_rate, args.nursing_rate)
    if args.csv:
        count = renderer.write_premium_csv(Path(args.csv), record, rates)
        logger.info("Wrote %d rows to %s", count, args.csv)
        return
    section = premium.find_premium_section(record)
    if section is None:
        print("No table with a health-insurance standard amount column.")
        return
    results = premium.calculate_premiums(record, rates)
    print_premium_table(section, results)


def command_analyze(args: argparse.Namespace) -> None:
    from egov_viewer.notice_extractor import gemini

    path = resolve_input(args.path)
    text = parser.decode_document(path.read_bytes())
    try:
        record = gemini.analyze_with_gemini(text, model=args.model)
    except Exception as exc:  # remote failures vary
        logger.warning("Gemini extraction failed (%s); using deterministic extractor", exc)
        _, record = load_record(path, build_options(args))
    print(renderer.render_record(record))


def write_jsonl(path: Path, items: Iterable[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        for item in items:
            fh.write(json.dumps(item, ensure_ascii=False))
            fh.write("\n")


def write_scan_report(
    paths: OutputPaths, target: Path, files: Mapping[str, parser.FileScanResult]
) -> None:
    report = {
        "target": str(target),
        "files": {file: data.to_dict() for file, data in files.items()},
        "counts": {
            "files": len(files),
            "errors": sum(1 for result in files.values() if result.status == "error"),
            "rows": sum(result.row_count for result in files.values()),
        },
    }
    paths.scan_report_path.parent.mkdir(parents=True, exist_ok=True)
    with paths.scan_report_path.open("w", encoding="utf-8") as fh:
        json.dump(report, fh, indent=2, ensure_ascii=False)


def print_premium_table(section: extract.Section, results: list[premium.PremiumRow]) -> None:
    columns = [*section.headers, *renderer.PREMIUM_COLUMNS]
    print(" | ".join(columns))
    print("-" * 95)
    for result in results:
        cells = [result.row.get(header, renderer.MISSING_CELL) for header in section.headers]
        cells.extend(
            f"{value:,}円"
            for value in (result.health, result.pension, result.nursing, result.total)
        )
        print(" | ".join(cells))


def add_rate_arguments(parser_obj: argparse.ArgumentParser) -> None:
    parser_obj.add_argument("--health-rate", type=float, help="健康保険料率 (%%)")
    parser_obj.add_argument("--pension-rate", type=float, help="厚生年金保険料率 (%%)")
    parser_obj.add_argument("--nursing-rate", type=float, help="介護保険料率 (%%)")


def build_parser() -> argparse.ArgumentParser:
    parser_obj = argparse.ArgumentParser(description="Extract e-Gov notice XML documents")
    parser_obj.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser_obj.add_argument("--synonyms", help="JSON synonym table overriding the built-in one")
    parser_obj.add_argument(
        "--title-strategy",
        choices=extract.TITLE_STRATEGIES,
        help="How the document title is resolved (default: fingerprint)",
    )
    subparsers = parser_obj.add_subparsers(dest="command")

    scan_parser = subparsers.add_parser("scan", help="Extract every XML under a folder or zip")
    scan_parser.add_argument("path", help="Folder, .zip archive or .xml file")
    scan_parser.add_argument("--out", default=str(DEFAULT_OUTPUT), help="Output directory")
    scan_parser.add_argument("--workers", type=int, default=1, help="Documents processed in parallel")
    scan_parser.set_defaults(func=command_scan)

    show_parser = subparsers.add_parser("show", help="Print the document preview")
    show_parser.add_argument("path")
    show_parser.set_defaults(func=command_show)

    tree_parser = subparsers.add_parser("tree", help="Print the element tree")
    tree_parser.add_argument("path")
    tree_parser.set_defaults(func=command_tree)

    premiums_parser = subparsers.add_parser("premiums", help="Calculate employee premiums")
    premiums_parser.add_argument("path")
    premiums_parser.add_argument("--csv", help="Write the result as CSV instead of printing")
    add_rate_arguments(premiums_parser)
    premiums_parser.set_defaults(func=command_premiums)

    analyze_parser = subparsers.add_parser("analyze", help="Extract with Gemini (falls back)")
    analyze_parser.add_argument("path")
    analyze_parser.add_argument("--model", default="gemini-2.5-flash")
    analyze_parser.set_defaults(func=command_analyze)

    return parser_obj


def main(argv: list[str] | None = None) -> None:
    parser_obj = build_parser()
    args = parser_obj.parse_args(argv)
    if not getattr(args, "command", None):
        parser_obj.print_help()
        return
    configure_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()

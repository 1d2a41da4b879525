# src/comorbidity_mapper/cli.py
import logging
import time
from pathlib import Path

import click
import pandas as pd

from comorbidity_mapper.catalog import TaxonomyCatalog
from comorbidity_mapper.classify import POA_FILTERS, Classifier
from comorbidity_mapper.config import build_map_from_config
from comorbidity_mapper.convert import decimal_to_short, guess_version, normalize_short, short_to_decimal
from comorbidity_mapper.errors import ComorbidityMapperError
from comorbidity_mapper.expand import expand_range
from comorbidity_mapper.utils import export_map_to_csv


def _catalog(path, taxonomy, delimiter):
    if path is None:
        return None
    return TaxonomyCatalog.from_file(path, taxonomy=taxonomy, delimiter=delimiter)


@click.group()
@click.option("-v", "--verbose", count=True, help="-v for info, -vv for debug logging")
def cli(verbose):
    """Comorbidity mapper CLI"""
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s %(message)s")


@cli.command()
@click.argument("codes", nargs=-1, required=True)
@click.option("--to", "target", type=click.Choice(["decimal", "short"]), default="decimal")
@click.option("--taxonomy", default=None, help="icd9, icd10, icd10cm or icd10ca; guessed when omitted")
def convert(codes, target, taxonomy):
    """Convert codes between short and decimal form."""
    for code in codes:
        try:
            tag = taxonomy or guess_version(code)
            short = decimal_to_short(code, tag) if "." in code else normalize_short(code, tag)
            out = short_to_decimal(short, tag) if target == "decimal" else short
        except ComorbidityMapperError as e:
            raise click.ClickException(str(e))
        click.echo(f"{code}\t{out}")


@cli.command()
@click.argument("taxonomy")
@click.argument("start")
@click.argument("end", required=False)
@click.option("--defined", is_flag=True, help="Keep only codes in the reference catalog")
@click.option("--catalog", "catalog_path", type=click.Path(exists=True), default=None)
@click.option("--delimiter", default=",", help="Catalog file delimiter")
@click.option("--decimal/--short", default=True, help="Output format")
def expand(taxonomy, start, end, defined, catalog_path, delimiter, decimal):
    """Expand a code range into its codes."""
    catalog = _catalog(catalog_path, taxonomy, delimiter)
    try:
        codes = expand_range(taxonomy, start, end, defined=defined, catalog=catalog)
    except ComorbidityMapperError as e:
        raise click.ClickException(str(e))
    for code in codes:
        click.echo(code.to_decimal().value if decimal else code.value)
    click.echo(f"{len(codes)} codes", err=True)


@cli.command("build-map")
@click.argument("config")
@click.option("--catalog", "catalog_path", type=click.Path(exists=True), default=None)
@click.option("--catalog-taxonomy", default=None, help="Taxonomy of every catalog row")
@click.option("--delimiter", default=",", help="Catalog file delimiter")
@click.option("--output", type=click.Path(), default=None, help="Write the map as long format CSV")
@click.option("--decimal", is_flag=True, help="Write decimal codes")
def build_map_command(config, catalog_path, catalog_taxonomy, delimiter, output, decimal):
    """Build a map from a YAML file or packaged definition name."""
    catalog = _catalog(catalog_path, catalog_taxonomy, delimiter)
    cmap = build_map_from_config(config, catalog=catalog)

    click.echo(repr(cmap))
    click.echo(f"fingerprint: {cmap.fingerprint()}")
    for row in cmap.summary().itertuples(index=False):
        click.echo(f"  {row.category}: {row.n_codes}")
    for diagnostic in cmap.diagnostics:
        click.echo(f"[{diagnostic.kind}] {diagnostic.category}: {diagnostic.detail}", err=True)

    if output:
        export_map_to_csv(cmap, output, decimal=decimal)
        click.echo(f"Saved to {output}")


@cli.command()
@click.argument("records", type=click.Path(exists=True))
@click.option("--map", "map_config", default="elixhauser_icd9", help="YAML file or packaged map name")
@click.option("--output", type=click.Path(), required=True)
@click.option("--visit-column", default="visit_id")
@click.option("--code-column", default="code")
@click.option("--taxonomy-column", default="taxonomy")
@click.option("--poa-column", default="poa")
@click.option("--taxonomy", default=None, help="Taxonomy for records without their own tag")
@click.option("--poa", type=click.Choice(sorted(POA_FILTERS)), default=None)
@click.option("--counts", is_flag=True, help="Count matching codes instead of flagging presence")
@click.option("--delimiter", default=",")
@click.option("--chunk-visits", type=int, default=100000, help="Visits per chunk")
@click.option("--progress/--no-progress", default=True, help="Show progress bar")
def classify(records, map_config, output, visit_column, code_column, taxonomy_column,
             poa_column, taxonomy, poa, counts, delimiter, chunk_visits, progress):
    """Classify a long format records file into a visit x category table."""
    cmap = build_map_from_config(map_config)
    df = pd.read_csv(records, delimiter=delimiter, dtype=str)
    click.echo(f"Loaded {len(df):,} records from {records}")

    start_time = time.time()
    result = Classifier(cmap).classify_chunked(
        df,
        chunk_visits=chunk_visits,
        show_progress=progress,
        counts=counts,
        taxonomy=taxonomy,
        poa=poa,
        visit_column=visit_column,
        code_column=code_column,
        taxonomy_column=taxonomy_column,
        poa_column=poa_column,
    )
    end_time = time.time()
    click.echo(f"Classification completed in {end_time - start_time:.2f} seconds")

    summary = result.summary
    click.echo(
        f"{len(result):,} visits, {summary.matched:,} matched, "
        f"{summary.unmatched:,} unmatched, {summary.excluded:,} excluded"
    )
    for reason, n in sorted(summary.counts.items()):
        click.echo(f"  {reason}: {n:,}")

    output = Path(output)
    output.parent.mkdir(parents=True, exist_ok=True)
    result.to_frame(visit_column).to_csv(output, index=False)
    click.echo(f"Saved to {output}")


if __name__ == "__main__":
    cli()

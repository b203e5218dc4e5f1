"""
Example usage of the tabular cleaner.

Demonstrates:
- Parsing an uploaded CSV file
- Applying cleaning rules from YAML configuration
- Building rules from the rule catalog
- Observing per-rule events
- Using DuckDB for storage
"""

from pathlib import Path

from tabular_cleaner import CleaningEngine, CleaningEvent, DuckDBStorage
from tabular_cleaner.formats import export_dataset, parse_csv
from tabular_cleaner.observability import configure_logging
from tabular_cleaner.rules import load_rule_catalog

HERE = Path(__file__).parent

UPLOAD = """Name,Age,Diagnosis,Date,Follow-up Date
 Alice ,34,e119,2024-01-05,02/05/2024
Bob,,J45.9,2024-01-07,2024-02-07
 Carla,71,I10 ,2024-01-09,03/01/2024
Dan,16,E11.9,2024-01-10,2024-02-10
 Alice ,34,E119,2024-01-05,02/05/2024
Eve,n/a,K21.0,2024-01-12,2024-02-12
"""


def print_event(event: CleaningEvent) -> None:
    print(f"   [{event.status:>7}] {event.message}")


def config_example() -> None:
    """Clean an upload with the rules from intake_rules.yaml."""
    print("=" * 80)
    print("CONFIGURATION EXAMPLE")
    print("=" * 80)

    dataset = parse_csv(UPLOAD, source_name="visits.csv")
    print(f"\n1. Parsed {dataset.metadata.row_count} rows x {dataset.metadata.column_count} columns")

    engine = CleaningEngine(config=HERE / "intake_rules.yaml", observer=print_event)
    print(f"\n2. Loaded configuration: {engine.config.name}")  # type: ignore
    print(f"   Rules: {len(engine.config.rules)}\n")  # type: ignore

    result = engine.run(dataset)

    print("\n3. Cleaned data:")
    print(export_dataset(result.dataset, "csv"))

    print("4. Diagnostics:")
    for diagnostic in result.diagnostics:
        print(f"   - {diagnostic.rule_name} ({diagnostic.kind}): {diagnostic.message}")


def catalog_example() -> None:
    """Build rules from catalog templates, the way the rule picker does."""
    print("\n" + "=" * 80)
    print("RULE CATALOG EXAMPLE")
    print("=" * 80)

    catalog = load_rule_catalog(HERE / "cleaning_rules_settings.json")
    print(f"\n1. Catalog templates: {[t.id for t in catalog.templates]}")

    missing = catalog.get("handleMissingValues")
    trim = catalog.get("trimWhitespace")
    assert missing is not None and trim is not None

    print(f"2. Checking {{'method': 'average'}}: {missing.check_parameters({'method': 'average'})}")

    rules = [trim.build_rule("Name", {}), missing.build_rule("Age", {"method": "mean"})]
    for rule in rules:
        print(f"   built {rule.id}: {rule.operation} on {rule.field} {rule.parameters}")

    engine = CleaningEngine(enable_observability=False)
    cleaned = engine.apply_rules(parse_csv(UPLOAD, source_name="visits.csv"), rules)
    print("\n3. Ages after filling:", cleaned.column_values("Age"))


def storage_example() -> None:
    """Example using DuckDB storage."""
    print("\n" + "=" * 80)
    print("STORAGE EXAMPLE")
    print("=" * 80)

    with DuckDBStorage() as storage:
        print("\n1. Connected to in-memory DuckDB")

        storage.save_dataset(parse_csv(UPLOAD, source_name="visits.csv"), "raw_visits")
        print(f"2. Tables in database: {storage.list_tables()}")

        engine = CleaningEngine(config=HERE / "intake_rules.yaml", storage=storage)
        result = engine.clean_from_storage("raw_visits", "clean_visits")
        print(f"3. Cleaned {result.dataset.metadata.row_count} rows into 'clean_visits'")

        counts = storage.query(
            "SELECT Age_category AS band, COUNT(*) AS visits FROM clean_visits GROUP BY band ORDER BY band"
        )
        print("\n4. Visits per age band:")
        for row in counts.rows:
            print(f"   {row['band']}: {row['visits']}")


def main() -> None:
    """Run all examples."""
    configure_logging("WARNING")
    config_example()
    catalog_example()
    storage_example()

    print("\n" + "=" * 80)
    print("Examples completed successfully!")
    print("=" * 80)


if __name__ == "__main__":
    main()

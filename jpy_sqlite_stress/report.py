"""
Markdown report and console summary for a finished stress run.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import logging
from datetime import datetime, timezone
from typing import Any

from jpy_sqlite_stress.models import PhaseMetrics, RunResult
from jpy_sqlite_stress.timing import format_time

NOT_AVAILABLE = "N/A"

_RECOMMENDATIONS = """## Performance Summary
This SQLite stress test evaluated:
- ✅ **INSERT operations** with both single and batch processing
- ✅ **SELECT operations** with various complexity levels
- ✅ **UPDATE operations** including single, batch, and bulk updates
- ✅ **DELETE operations** with different patterns
- ✅ **TRANSACTION handling** including rollbacks
- ✅ **Data type support** for all SQLite types
- ✅ **Concurrent operations** with multiple workers
- ✅ **Maintenance operations** (VACUUM, ANALYZE)

## Recommendations
1. **Batch Operations**: Use transactions for bulk operations to improve performance
2. **Indexing**: Ensure proper indexing for frequently queried columns
3. **Data Types**: SQLite handles all standard data types efficiently
4. **Concurrency**: SQLite handles concurrent reads well, but writes are serialized
5. **Maintenance**: Regular VACUUM operations can help reclaim space and improve performance
"""


def _number(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return NOT_AVAILABLE
    if isinstance(value, float):
        return f"{value:,.2f}"
    if isinstance(value, int):
        return f"{value:,}"
    return str(value)


def _megabytes(value: Any) -> str:
    if not value:
        return NOT_AVAILABLE
    return f"{value / 1024 / 1024:.2f} MB"


def _value(value: Any) -> str:
    return NOT_AVAILABLE if value is None else str(value)


class _PhaseView:
    """Null-safe accessor over one phase of a RunResult."""

    def __init__(self, metrics: PhaseMetrics | None) -> None:
        self.metrics = metrics

    @property
    def error(self) -> str | None:
        return self.metrics.error if self.metrics else None

    def time(self, key: str | None = None) -> str:
        if self.metrics is None:
            return NOT_AVAILABLE
        if key is None:
            return format_time(self.metrics.total_time)
        return format_time(self.metrics.timings.get(key))

    def rate(self, key: str) -> str:
        return _number(self.metrics.rates.get(key)) if self.metrics else NOT_AVAILABLE

    def counter(self, key: str) -> Any:
        return self.metrics.counters.get(key) if self.metrics else None


def _phase_section(title: str, view: _PhaseView, lines: list[str]) -> list[str]:
    section = [f"### {title}"]
    if view.error:
        section.append(f"- **Error**: {view.error}")
    section.extend(lines)
    section.append("")
    return section


def _select_lines(view: _PhaseView) -> list[str]:
    if view.metrics is None:
        return []
    lines = []
    for name, data in view.metrics.counters.items():
        if "error" in data:
            lines.append(f"- **{name}**: {format_time(data.get('execution_time'))} (error: {data['error']})")
            continue
        lines.append(
            f"- **{name}**: {format_time(data.get('execution_time'))} "
            f"({_number(data.get('rows_returned'))} rows, {_number(data.get('rate_per_second'))}/sec)"
        )
    return lines


def render_markdown(run_result: RunResult, generated_at: str | None = None) -> str:
    """
    Render a RunResult as the Markdown stress test report.

    Phases that never ran show N/A; phases that failed show their error.
    """
    env = run_result.environment
    insert = _PhaseView(run_result.phase("insert"))
    select = _PhaseView(run_result.phase("select"))
    update = _PhaseView(run_result.phase("update"))
    delete = _PhaseView(run_result.phase("delete"))
    transaction = _PhaseView(run_result.phase("transaction"))
    datatype = _PhaseView(run_result.phase("datatype"))
    concurrency = _PhaseView(run_result.phase("concurrency"))
    maintenance = _PhaseView(run_result.phase("maintenance"))
    stats = _PhaseView(run_result.phase("statistics"))

    verification = datatype.counter("verification_passed")
    types = datatype.counter("types")
    avg_age = stats.counter("avg_user_age")
    max_salary = stats.counter("max_salary")

    lines = [
        "# SQLite Stress Test Report",
        "",
        "## Test Overview",
        f"- **Timestamp**: {run_result.timestamp}",
        f"- **Python Version**: {_value(env.get('python_version'))}",
        f"- **Platform**: {_value(env.get('platform'))} ({_value(env.get('arch'))})",
        f"- **CPUs**: {_value(env.get('cpus'))}",
        f"- **Memory**: {_value(env.get('memory'))}",
        f"- **SQLite Version**: {_value(env.get('sqlite_version'))}",
        f"- **Database Path**: {_value(env.get('database_path'))}",
        f"- **Total Time**: {format_time(run_result.total_time)}",
    ]
    if run_result.error:
        lines.append(f"- **Terminal Error**: {run_result.error}")
    lines += [
        "",
        "## Test Configuration",
        f"- **Test Records**: {_number(env.get('test_records'))}",
        f"- **Transaction Size**: {_number(env.get('transaction_size'))}",
        f"- **Concurrent Workers**: {_value(env.get('concurrent_workers'))}",
        "",
        "## Performance Results",
        "",
    ]
    lines += _phase_section("INSERT Performance", insert, [
        f"- **Total Records**: {_number(insert.counter('total_records'))}",
        f"- **Total Time**: {insert.time()}",
        f"- **Single Insert Time**: {insert.time('single_insert_time')}",
        f"- **Batch Insert Time**: {insert.time('batch_insert_time')}",
        f"- **Records/Second**: {insert.rate('records_per_second')}",
        f"- **Single Insert Rate**: {insert.rate('single_insert_rate')} records/sec",
        f"- **Batch Insert Rate**: {insert.rate('batch_insert_rate')} records/sec",
        f"- **Failed Batches**: {_number(insert.counter('failed_batches'))}",
    ])
    lines += _phase_section("SELECT Performance", select, _select_lines(select))
    lines += _phase_section("UPDATE Performance", update, [
        f"- **Single Updates**: {update.time('single_update_time')}",
        f"- **Batch Updates**: {update.time('batch_update_time')}",
        f"- **Bulk Update**: {update.time('bulk_update_time')} ({_number(update.counter('bulk_rows_affected'))} rows)",
        f"- **Total Time**: {update.time()}",
    ])
    lines += _phase_section("DELETE Performance", delete, [
        f"- **Single Deletes**: {delete.time('single_delete_time')}",
        f"- **Bulk Delete**: {delete.time('bulk_delete_time')} ({_number(delete.counter('bulk_rows_deleted'))} rows)",
        f"- **Rows Deleted**: {_number(delete.counter('rows_deleted'))}",
        f"- **Total Time**: {delete.time()}",
    ])
    lines += _phase_section("TRANSACTION Performance", transaction, [
        f"- **Batch Insert**: {transaction.time('batch_insert_time')}",
        f"- **Rollback Test**: {transaction.time('rollback_time')}",
        f"- **Rollback Verified**: {_value(transaction.counter('rollback_verified'))}",
        f"- **Total Time**: {transaction.time()}",
    ])
    lines += _phase_section("Data Types Support", datatype, [
        f"- **Types Tested**: {_number(datatype.counter('total_types'))}",
        f"- **Verification**: {'✅ PASSED' if verification else '❌ FAILED'}",
        f"- **Execution Time**: {datatype.time()}",
        f"- **Supported Types**: {', '.join(types) if types else NOT_AVAILABLE}",
    ])
    lines += _phase_section("Concurrency Test", concurrency, [
        f"- **Workers**: {_number(concurrency.counter('workers'))}",
        f"- **Operations per Worker**: {_number(concurrency.counter('operations_per_worker'))}",
        f"- **Total Operations**: {_number(concurrency.counter('total_operations'))}",
        f"- **Success Rate**: {_value(concurrency.counter('success_rate'))}",
        f"- **Operations/Second**: {concurrency.rate('operations_per_second')}",
        f"- **Average Execution Time**: {concurrency.time('avg_execution_time')}",
        f"- **Total Time**: {concurrency.time()}",
        f"- **Total Errors**: {_number(concurrency.counter('total_errors'))}",
    ])
    lines += _phase_section("Maintenance Operations", maintenance, [
        f"- **ANALYZE Time**: {maintenance.time('analyze_time')}",
        f"- **VACUUM Time**: {maintenance.time('vacuum_time')}",
        f"- **Total Time**: {maintenance.time()}",
        f"- **Size Before VACUUM**: {_megabytes(maintenance.counter('size_before_vacuum'))}",
        f"- **Size After VACUUM**: {_megabytes(maintenance.counter('size_after_vacuum'))}",
        f"- **Space Saved**: {_megabytes(maintenance.counter('space_saved'))}",
        f"- **Compression Ratio**: {_value(maintenance.counter('compression_ratio'))}",
        f"- **Integrity Issues**: {_number(maintenance.counter('integrity_issues'))}",
    ])
    lines += [
        "## Final Database Statistics",
        f"- **Total Users**: {_number(stats.counter('total_users'))}",
        f"- **Total Transactions**: {_number(stats.counter('total_transactions'))}",
        f"- **Total Logs**: {_number(stats.counter('total_logs'))}",
        f"- **Average User Age**: {f'{avg_age:.2f}' if avg_age is not None else NOT_AVAILABLE}",
        f"- **Maximum Salary**: {f'${max_salary:,.2f}' if max_salary is not None else NOT_AVAILABLE}",
        f"- **Active Users**: {_number(stats.counter('active_users'))}",
        f"- **Database Size**: {_megabytes(stats.counter('database_size'))}",
        "",
        _RECOMMENDATIONS,
        "---",
        f"*Report generated on {generated_at or datetime.now(timezone.utc).isoformat()}*",
        "",
    ]
    return "\n".join(lines)


def write_report(run_result: RunResult, path: str) -> str:
    logging.info("Generating markdown report...")
    report = render_markdown(run_result)
    with open(path, "w", encoding="utf-8") as f:
        f.write(report)
    logging.info(f"Report saved to: {path}")
    return report


def print_summary(run_result: RunResult) -> None:
    stats = run_result.phase("statistics")
    database_size = stats.counters.get("database_size") if stats else None
    print(f"\n{'=' * 60}")
    print("SQLITE STRESS TEST SUMMARY")
    print(f"{'=' * 60}")
    print(f"Total Time: {format_time(run_result.total_time)}")
    print(f"Phases Completed: {len(run_result.completed_phases)} / {len(run_result.phases)}")
    print(f"Final Database Size: {_megabytes(database_size)}")
    for name, metrics in run_result.phases.items():
        if metrics.failed:
            print(f"  {name} failed: {metrics.error}")
    if run_result.error:
        print(f"Terminal Error: {run_result.error}")

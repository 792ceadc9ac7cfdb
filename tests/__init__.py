"""lanwatch Test Suite

Test modules:
    test_range_parser     — CIDR / dash / single parsing, size limit, auto-detect
    test_probe_engine     — worker pool, fallbacks, transport failure, vendor lookup
    test_detection_merger — source priority, overwrite flags, manual values
    test_database         — repository, stats, retention queries, migrations
                            (temp SQLite files via pytest tmp_path fixture)
    test_orchestrator     — scan lifecycle, single-flight, refresh, failures
    test_scheduler        — interval config, timers, pause gate, manual runs
    test_retention        — purge categories, auto-purge schedule
    test_dashboard        — read-only JSON API through Flask's test client
    test_config           — YAML settings, logger wiring, service container
    test_cli              — main.py exit codes and output
    test_layering         — static import analysis enforcing architectural
                            layering rules (core / database / services / dashboard)

Run all tests:
    pytest tests/ -v
"""

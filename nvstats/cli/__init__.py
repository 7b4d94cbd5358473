"""nvstats.cli — command-line interface modules.

main.py   = Entry point + argument parsing
report.py = Per-GPU telemetry report + interface listing
"""

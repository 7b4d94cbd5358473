"""nvstats.lib — driver access.

config.py = ReaderConfig
nvapi.py  = Undocumented NVAPI telemetry (session, mask probe, readers)
nvml.py   = Documented NVML sensors, used as a cross-reference
"""

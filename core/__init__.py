"""
Core modules shared by the scheduler, API and agents:
- config.py: Scheduler configuration (YAML + env)
- paths.py: Base and data directory resolution
"""

__version__ = "0.1.0"

"""
API - HTTP surface of the encoding scheduler.

    python -m api.server --port 8790
"""

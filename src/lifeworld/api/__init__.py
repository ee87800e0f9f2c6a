"""
Lifeworld REST API (FastAPI).
"""

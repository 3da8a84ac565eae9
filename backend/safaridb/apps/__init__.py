# backend/safaridb/apps/__init__.py

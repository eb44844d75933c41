"""
Clinic Therapy Scheduling

A FastAPI service that turns treatment plans into conflict-free therapy
sessions and resolves patient reschedule requests.
"""

__version__ = "1.0.0"

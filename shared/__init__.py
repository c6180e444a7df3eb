"""
Shared configuration, database access, models and event records
"""

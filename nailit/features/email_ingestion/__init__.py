"""
Mail ingestion feature package.

Discovery, filtering, batch import, push handling, thread reconstruction and
persistence for project email live together in this slice.
"""

"""
Service layer for rnaseq_de.

This subpackage contains code that interacts with the outside world:
count tables, sample sheets, annotation files and result tables.
"""

"""Local persistence of records and upload bookkeeping."""

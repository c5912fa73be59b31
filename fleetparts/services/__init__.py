"""services/ — quote lifecycle, order conversion, thread reconciliation and collaborators."""

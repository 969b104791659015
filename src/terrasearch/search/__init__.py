"""SQLite FTS5 and R-tree search: schema, storage, query planning, ranking and indexing."""

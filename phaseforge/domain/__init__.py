"""Value objects shared by the operations: issue snapshots, codebase context, file merging."""

"""
Layout resolution package.

Turns a user id and an ordered list of group identifiers into a final
layout by layering role templates, group overrides and cached user
preferences.

Modules of interest:
- models: Records, enums and API models shared by the service.
- parser: Market, role, function and environment hints in group identifiers.
- lookup: Cache-first lookups for each layer.
- engine: Merge algorithm, preference write-back and error handling.
- audit: One audit record per resolution attempt.
"""

"""Pure domain layer: DTOs, tree building and statement arithmetic.  No I/O."""

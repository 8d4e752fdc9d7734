"""Domain records, identifiers, errors and result types shared across the engine."""

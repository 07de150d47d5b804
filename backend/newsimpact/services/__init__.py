"""Learning services: ledger, aggregators, scanners, report compilation."""

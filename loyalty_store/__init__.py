# ==============================================
# Loyalty Hybrid Store
# ==============================================
#
# Package Structure:
#
# loyalty_store/
# ├── records/        # Identifier precedence, collections, query operators
# ├── storage/        # MySQL + MongoDB adapters, mediator, migrator
# ├── config.py       # Configuration management
# ├── errors.py       # Error taxonomy
# ├── log.py          # structlog setup
# └── cli.py          # Operator command line
#
# ==============================================

__version__ = "0.1.0"

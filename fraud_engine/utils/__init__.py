# Utilities

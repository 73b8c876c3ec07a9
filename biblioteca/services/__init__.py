"""Services package for operations that span several tables."""

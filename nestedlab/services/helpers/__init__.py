"""Pure helpers: PowerShell quoting, SDDL editing, bounded retry."""

"""One-way push sync of host expenses and invoices to QuickBooks Online."""

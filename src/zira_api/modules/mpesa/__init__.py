"""M-Pesa payment collection: credentials, STK push, polling and allocation."""

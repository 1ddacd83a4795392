"""Business services for checkout, vouchers, and payments."""

"""Business rules for orders, escrow, discounts, loyalty, reviews and disputes."""

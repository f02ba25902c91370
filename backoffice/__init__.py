"""Back-office workflow engine for customer-business onboarding."""

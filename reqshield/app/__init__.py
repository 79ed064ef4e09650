"""ReqShield application package."""

"""Unit tests and testing tools for the manual_acme_dns package."""

TEST_DOMAIN = "example.test"
TEST_EMAIL = "ops@example.test"
TEST_KEY_AUTHORIZATION = "abc123"
TEST_DIRECTORY = "https://acme.example.test/directory"
TEST_NAMESERVERS = ["8.8.8.8", "1.1.1.1"]

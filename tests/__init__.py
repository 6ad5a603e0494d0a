"""s3-unzip test suite."""

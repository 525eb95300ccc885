TEST_BUCKET_NAME = "test-ai-cloud-storage"
TEST_QUEUE_NAME = "test-file-analysis"
TEST_REGION = "us-east-1"
TEST_SIGNING_SECRET = "test-secret"
TEST_BASE_URL = "http://testserver"

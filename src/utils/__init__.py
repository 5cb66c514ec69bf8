"""
Utils package.

Conventions:
- All models are Pydantic models.
- All dates are represented as epoch timestamps (milliseconds since 1970-01-01T00:00:00Z).
- Subscription IDs are UUIDs; transaction IDs are opaque strings owned by bank sync.
- Models persisted to DynamoDB implement `to_dynamodb_item()` and the
  `from_dynamodb_item(data)` class method, which converts DynamoDB Decimals
  and string-encoded booleans back into model types.
"""

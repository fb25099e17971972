from schemas.query import ErrorResponse, QueryRequest

"""HTTP server with routing, CORS, rate limiting, logging and health reporting."""
# Cross-cutting helpers: logging, errors, auth, caching

"""RAG Master backend: admin API plus the WhatsApp ⇄ Gemini relay."""

"""Client side: connection management with retries, command handlers and the shell."""
"""Control plane: chain membership, heartbeat monitoring, statistics and log display."""
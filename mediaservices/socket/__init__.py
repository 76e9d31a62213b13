"""WebSocket relay that fans a writer's data out to readers on a room/topic path."""
"""Live session fan-out over Socket.IO."""

"""SQLite persistence shared by the coordinator and learning loops."""

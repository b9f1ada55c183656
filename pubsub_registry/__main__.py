from pubsub_registry.main import main

main()

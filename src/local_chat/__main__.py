from local_chat.cli import main

main()

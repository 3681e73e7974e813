from arbiter.main import main

main()

from flowmind.main import main

main()

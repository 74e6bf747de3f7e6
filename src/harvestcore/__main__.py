from harvestcore.cli import main

main()

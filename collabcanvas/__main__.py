from collabcanvas.cli import main

main()

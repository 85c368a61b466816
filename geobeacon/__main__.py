from geobeacon.cli import main

main(prog_name="geobeacon")
